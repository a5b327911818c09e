"""Entity extraction module."""

from .types import (
    ExtractedSlots,
    Treatment,
    is_valid_date_text,
    is_valid_name,
    is_valid_tooth_count,
)
from .extractor import SlotExtractor, get_slot_extractor, extract_slots

__all__ = [
    # Types
    "ExtractedSlots",
    "Treatment",
    "is_valid_date_text",
    "is_valid_name",
    "is_valid_tooth_count",
    # Extractor
    "SlotExtractor",
    "get_slot_extractor",
    "extract_slots",
]
