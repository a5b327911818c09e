"""
Booking audit log.

Every calendar mutation (and every failure the front desk has to chase
up) produces one audit record. Records are written as JSON lines to the
``app.audit`` logger and kept in memory for inspection.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

audit_log = logging.getLogger("app.audit")


class AuditStatus(str, Enum):
    """Outcome recorded for an audited action."""

    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"
    NEEDS_FOLLOW_UP = "NEEDS FOLLOW-UP"


@dataclass
class AuditRecord:
    """One audited action."""

    conversation_id: str
    phone: str
    status: AuditStatus
    action: str
    intent: Optional[str] = None
    patient_name: Optional[str] = None
    practitioner: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    event_id: Optional[str] = None
    error: Optional[str] = None
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def needs_follow_up(self) -> bool:
        return self.status == AuditStatus.NEEDS_FOLLOW_UP

    def to_dict(self) -> dict:
        """Convert to dictionary for storage/transmission."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "conversation_id": self.conversation_id,
            "phone": self.phone,
            "status": self.status.value,
            "action": self.action,
            "intent": self.intent,
            "patient_name": self.patient_name,
            "practitioner": self.practitioner,
            "date_time": (
                f"{self.start.isoformat()} - {self.end.isoformat()}"
                if self.start and self.end else None
            ),
            "event_id": self.event_id,
            "error": self.error,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class AuditLogger:
    """
    Audit trail of booking actions.

    Usage:
        audit = AuditLogger()
        audit.record(
            conversation_id="+15551234567",
            phone="+15551234567",
            status=AuditStatus.CONFIRMED,
            action="appointment_booked",
            practitioner="Dr GeneralA",
        )
    """

    def __init__(self, max_records: int = 1000):
        self._records: list[AuditRecord] = []
        self._max_records = max_records

    @property
    def records(self) -> list[AuditRecord]:
        return list(self._records)

    def follow_ups(self) -> list[AuditRecord]:
        """Records the front desk still has to act on."""
        return [r for r in self._records if r.needs_follow_up]

    def record(self, conversation_id: str, phone: str, status: AuditStatus, action: str, **details) -> AuditRecord:
        """Write an audit record."""
        entry = AuditRecord(
            conversation_id=conversation_id,
            phone=phone,
            status=status,
            action=action,
            **details,
        )
        self._records.append(entry)
        if len(self._records) > self._max_records:
            self._records = self._records[-self._max_records:]

        level = logging.WARNING if entry.needs_follow_up else logging.INFO
        audit_log.log(level, entry.to_json())
        return entry


# Singleton
_audit: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get singleton AuditLogger."""
    global _audit
    if _audit is None:
        _audit = AuditLogger()
    return _audit
