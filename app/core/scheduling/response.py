"""
Response templates for the scheduling assistant.

Every user-facing sentence the engine sends is produced here so wording
stays consistent across the booking, cancellation and reschedule flows.
"""

from datetime import datetime
from typing import Optional, Sequence

from app.core.intelligence.session.models import BookingRef, ProposedSlot


def format_date(value: datetime) -> str:
    """1/16/2024"""
    return f"{value.month}/{value.day}/{value.year}"


def format_time(value: datetime) -> str:
    """10:00 AM"""
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"


class ResponseGenerator:
    """Template responses used by the scheduling engine."""

    # === General ===

    def greeting(self) -> str:
        return (
            "Hello! I can help you book, reschedule or cancel a dental appointment, "
            "and answer questions about our prices. How can I help you today?"
        )

    def session_cleared(self) -> str:
        return "✅ Your session has been cleared. Starting fresh! How can I help you today?"

    def generic_error(self) -> str:
        return (
            "I apologize, something went wrong on our side. "
            "Please try again or contact our receptionist."
        )

    def anything_else(self) -> str:
        return "Is there anything else I can help you with?"

    # === Booking: collection ===

    def ask_treatment(self) -> str:
        return (
            "What kind of appointment do you need? We offer Consultation, Cleaning, "
            "Filling and Braces Maintenance."
        )

    def ask_practitioner(self, practitioners: Sequence[str], treatment: str) -> str:
        return (
            f"For {treatment} you can see {' or '.join(practitioners)}. "
            "Which dentist would you prefer?"
        )

    def ask_tooth_count(self) -> str:
        return "How many teeth need filling?"

    def ask_name(self) -> str:
        return "I found an available slot, but I need your name first. What is your name?"

    def invalid_name(self) -> str:
        return "Sorry, I didn't catch a valid name. Please tell me your full name."

    def ask_preference(self) -> str:
        return "What day and time would suit you best?"

    # === Booking: proposal and confirmation ===

    def propose_slot(self, slot: ProposedSlot, duration_minutes: int) -> str:
        return (
            "I found an available slot:\n\n"
            f"Doctor: {slot.practitioner}\n"
            f"Date: {format_date(slot.start)}\n"
            f"Time: {format_time(slot.start)} - {format_time(slot.end)}\n"
            f"Duration: {duration_minutes} minutes\n\n"
            "Would you like to confirm this appointment?"
        )

    def slot_taken(self) -> str:
        return "I'm sorry, that slot was just taken."

    def reask_slot(self) -> str:
        return "Please reply yes to confirm this appointment, or no to look for another time."

    def slot_declined(self) -> str:
        return "No problem. What other day or time would work for you?"

    def no_slot(self) -> str:
        return (
            "I apologize, but I could not find an available slot at the moment. "
            "Would you like me to check for a different time, or would you prefer to "
            "contact our receptionist directly?"
        )

    def availability_error(self) -> str:
        return (
            "I apologize, I am having trouble checking availability. "
            "Please try again or contact our receptionist."
        )

    def booking_confirmed(self, slot: ProposedSlot, treatment: str) -> str:
        return (
            "✅ Appointment confirmed!\n\n"
            f"Doctor: {slot.practitioner}\n"
            f"Treatment: {treatment}\n"
            f"Date: {format_date(slot.start)}\n"
            f"Time: {format_time(slot.start)} - {format_time(slot.end)}\n\n"
            "We look forward to seeing you!"
        )

    def booking_failed(self) -> str:
        return (
            "I'm sorry, I wasn't able to complete the booking. "
            "Our receptionist will contact you shortly to arrange your appointment."
        )

    # === Cancellation ===

    def cancel_not_found(self) -> str:
        return (
            "I could not find an appointment for your phone number. "
            "Please contact our receptionist for assistance."
        )

    def confirm_cancel(self, booking: BookingRef) -> str:
        return (
            "I found your appointment:\n\n"
            f"Doctor: {booking.practitioner}\n"
            f"Date: {format_date(booking.start)}\n"
            f"Time: {format_time(booking.start)}\n\n"
            "Would you like to confirm cancellation?"
        )

    def reask_cancel(self) -> str:
        return "Please reply yes to cancel this appointment, or no to keep it."

    def cancelled(self) -> str:
        return "✅ Your appointment has been cancelled successfully. We hope to see you again soon!"

    def cancel_declined(self) -> str:
        return (
            "No problem. Your appointment remains scheduled. "
            "Is there anything else I can help you with?"
        )

    def cancel_failed(self) -> str:
        return (
            "I'm sorry, I wasn't able to cancel your appointment. "
            "Our receptionist will contact you shortly."
        )

    # === Reschedule ===

    def reschedule_not_found(self) -> str:
        return (
            "I could not find any appointments for your phone number. "
            "Would you like to book a new appointment instead?"
        )

    def choose_booking(self, bookings: Sequence[BookingRef]) -> str:
        lines = ["I found multiple appointments:\n"]
        for index, booking in enumerate(bookings, 1):
            lines.append(
                f"{index}. Doctor: {booking.practitioner}, "
                f"Date: {format_date(booking.start)}, Time: {format_time(booking.start)}"
            )
        lines.append(
            "\nWhich appointment would you like to reschedule? "
            "Please specify by number or date/time."
        )
        return "\n".join(lines)

    def confirm_reschedule(self, booking: BookingRef) -> str:
        return (
            "I found your appointment:\n\n"
            f"Doctor: {booking.practitioner}\n"
            f"Date: {format_date(booking.start)}\n"
            f"Time: {format_time(booking.start)}\n\n"
            "Would you like to reschedule this appointment?"
        )

    def reask_reschedule(self) -> str:
        return "Please reply yes to reschedule this appointment, or no to keep it."

    def old_booking_cancelled(self) -> str:
        return "✅ I've cancelled your old appointment. Now let's find a new time slot for you."

    def reschedule_failed(self) -> str:
        return (
            "I'm sorry, I wasn't able to move your appointment. "
            "Our receptionist will contact you shortly."
        )

    # === Add-ons ===

    def appointment_details(self, booking: Optional[BookingRef]) -> str:
        if booking is None:
            return (
                "I could not find an appointment for your phone number. "
                "Please contact our receptionist for assistance."
            )
        treatment = f"Treatment: {booking.treatment}\n" if booking.treatment else ""
        return (
            "Here are your appointment details:\n\n"
            f"Doctor: {booking.practitioner}\n"
            f"{treatment}"
            f"Date: {format_date(booking.start)}\n"
            f"Time: {format_time(booking.start)} - {format_time(booking.end)}"
        )

    def pricing(self, text: str) -> str:
        return f"Here is our pricing information:\n\n{text}"

    def pricing_unavailable(self) -> str:
        return "I couldn't load our price list right now. Our receptionist can help with pricing."

    def combine(self, *parts: Optional[str]) -> str:
        """Join non-empty parts into one reply."""
        return "\n\n".join(p for p in parts if p)


# Singleton
_generator: Optional[ResponseGenerator] = None


def get_response_generator() -> ResponseGenerator:
    """Get singleton ResponseGenerator."""
    global _generator
    if _generator is None:
        _generator = ResponseGenerator()
    return _generator
