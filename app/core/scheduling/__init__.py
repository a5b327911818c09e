"""
Scheduling Module

Availability search, booking orchestration and calendar integration.

Usage:
    from app.core.scheduling import handle_turn

    reply = await handle_turn("+15551234567", "+15551234567", "Book a cleaning tomorrow at 10am")
"""

from app.core.scheduling.availability import (
    AvailableSlot,
    BusyInterval,
    WorkingHours,
    clinic_now,
    compute_free_intervals,
    slots_for_practitioners,
)
from app.core.scheduling.allocator import (
    appointment_window,
    earliest_fit,
    filter_by_range,
    select_slot,
)
from app.core.scheduling.treatment import (
    compute_duration,
    dentists_for,
    search_duration,
)
from app.core.scheduling.calendar_client import (
    Booking,
    CalendarClient,
    CalendarError,
    EventResult,
    HttpCalendarClient,
    InMemoryCalendar,
    get_calendar_client,
    normalize_phone,
    phone_matches,
)
from app.core.scheduling.pricing import (
    HttpPricingClient,
    PricingClient,
    StaticPricingClient,
    get_pricing_client,
)
from app.core.scheduling.audit import AuditLogger, AuditStatus, get_audit_logger
from app.core.scheduling.response import ResponseGenerator, get_response_generator
from app.core.scheduling.flow import (
    Action,
    ConversationFlow,
    FlowAction,
    get_conversation_flow,
)
from app.core.scheduling.engine import (
    SchedulingEngine,
    get_scheduling_engine,
    handle_turn,
)

__all__ = [
    # Availability
    "AvailableSlot",
    "BusyInterval",
    "WorkingHours",
    "clinic_now",
    "compute_free_intervals",
    "slots_for_practitioners",
    # Allocation
    "appointment_window",
    "earliest_fit",
    "filter_by_range",
    "select_slot",
    # Treatments
    "compute_duration",
    "dentists_for",
    "search_duration",
    # Calendar
    "Booking",
    "CalendarClient",
    "CalendarError",
    "EventResult",
    "HttpCalendarClient",
    "InMemoryCalendar",
    "get_calendar_client",
    "normalize_phone",
    "phone_matches",
    # Pricing
    "HttpPricingClient",
    "PricingClient",
    "StaticPricingClient",
    "get_pricing_client",
    # Audit
    "AuditLogger",
    "AuditStatus",
    "get_audit_logger",
    # Responses
    "ResponseGenerator",
    "get_response_generator",
    # Flow
    "Action",
    "ConversationFlow",
    "FlowAction",
    "get_conversation_flow",
    # Engine
    "SchedulingEngine",
    "get_scheduling_engine",
    "handle_turn",
]
