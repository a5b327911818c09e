"""
Treatment rules.

Appointment durations and which dentists perform which treatments.
"""

from typing import Optional

from app.config import settings
from app.core.intelligence.slots.types import Treatment, is_valid_tooth_count

# Dentist whose braces maintenance visits take longer
LONG_BRACES_DENTIST = "Dr BracesB"

DEFAULT_DURATION = 15
BASE_DURATIONS: dict[Treatment, int] = {
    Treatment.CONSULTATION: 15,
    Treatment.CLEANING: 30,
}
BRACES_DURATION_LONG = 45
BRACES_DURATION_SHORT = 15
FILLING_FIRST_TOOTH = 30
FILLING_EXTRA_TOOTH = 15


def parse_treatment(value: Optional[str]) -> Optional[Treatment]:
    """Map a stored treatment name back to the enum."""
    if not value:
        return None
    try:
        return Treatment(value)
    except ValueError:
        return Treatment.OTHER


def compute_duration(
    treatment: Optional[Treatment],
    practitioner: Optional[str] = None,
    tooth_count: Optional[int] = None,
) -> int:
    """
    Appointment length in minutes.

    - Consultation: 15
    - Cleaning: 30
    - Braces Maintenance: 45 with Dr BracesB, otherwise 15
    - Filling: 15 if the tooth count is unknown, else 30 + 15 per extra tooth
    - Anything else: 15
    """
    if treatment == Treatment.BRACES_MAINTENANCE:
        if practitioner == LONG_BRACES_DENTIST:
            return BRACES_DURATION_LONG
        return BRACES_DURATION_SHORT

    if treatment == Treatment.FILLING:
        if not is_valid_tooth_count(tooth_count):
            return DEFAULT_DURATION
        return FILLING_FIRST_TOOTH + (tooth_count - 1) * FILLING_EXTRA_TOOTH

    if treatment is None:
        return DEFAULT_DURATION
    return BASE_DURATIONS.get(treatment, DEFAULT_DURATION)


def search_duration(
    treatment: Optional[Treatment],
    practitioner: Optional[str] = None,
    tooth_count: Optional[int] = None,
) -> int:
    """Duration to search for before the dentist is known.

    Braces visits may land with the slower dentist, so the search asks
    for the longest braces duration until a dentist is fixed.
    """
    if treatment == Treatment.BRACES_MAINTENANCE and practitioner is None:
        return BRACES_DURATION_LONG
    return compute_duration(treatment, practitioner, tooth_count)


def dentists_for(treatment: Optional[Treatment]) -> list[str]:
    """Dentists who perform a treatment."""
    if treatment == Treatment.BRACES_MAINTENANCE:
        return settings.braces_dentist_list
    return settings.general_dentist_list


def performs(practitioner: str, treatment: Optional[Treatment]) -> bool:
    return practitioner in dentists_for(treatment)
