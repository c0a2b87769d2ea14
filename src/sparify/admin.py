"""Audit trail of ownership changes and admin credits on piggy banks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .models import utcnow
from .money import ZERO, to_decimal


class AuditAction(str, Enum):
    CLAIM = "claim"
    GUEST_CODE = "guest_code"
    GUEST_JOIN = "guest_join"
    GUEST_LEAVE = "guest_leave"
    GUESTS_REMOVED = "guests_removed"
    RESET = "reset"
    ADMIN_CREDIT = "admin_credit"


@dataclass(slots=True, frozen=True)
class AuditEvent:
    """One action taken on a piggy bank. ``amount`` is set for admin credits."""

    actor: str
    action: AuditAction
    piggy_bank_id: str
    amount: Optional[Decimal] = None
    timestamp: datetime = field(default_factory=utcnow)
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "actor": self.actor,
            "action": self.action.value,
            "piggy_bank_id": self.piggy_bank_id,
            "amount": None if self.amount is None else str(self.amount),
            "timestamp": self.timestamp.isoformat(),
            "details": dict(self.details),
        }


class AuditLog:
    """In-memory audit events, queried per piggy bank.

    A reset hands the piggy bank to its next owner, so :meth:`history` and
    :meth:`credited_total` only look at events recorded after the latest reset.
    """

    def __init__(self, clock=utcnow) -> None:
        self._entries: list[AuditEvent] = []
        self._clock = clock

    def record(
        self,
        actor: str,
        action: AuditAction,
        piggy_bank_id: str,
        *,
        amount: Optional[Decimal] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            actor=actor,
            action=AuditAction(action),
            piggy_bank_id=piggy_bank_id,
            amount=None if amount is None else to_decimal(amount),
            timestamp=self._clock(),
            details=dict(details or {}),
        )
        self._entries.append(event)
        return event

    def entries(
        self, *, action: AuditAction | None = None, piggy_bank_id: str | None = None
    ) -> tuple[AuditEvent, ...]:
        records = self._entries
        if action is not None:
            records = [entry for entry in records if entry.action is AuditAction(action)]
        if piggy_bank_id is not None:
            records = [entry for entry in records if entry.piggy_bank_id == piggy_bank_id]
        return tuple(records)

    def history(self, piggy_bank_id: str) -> tuple[AuditEvent, ...]:
        """Events of ``piggy_bank_id`` since its latest reset, oldest first."""

        events = self.entries(piggy_bank_id=piggy_bank_id)
        for index in range(len(events) - 1, -1, -1):
            if events[index].action is AuditAction.RESET:
                return events[index + 1 :]
        return events

    def credited_total(self, piggy_bank_id: str) -> Decimal:
        total = ZERO
        for event in self.history(piggy_bank_id):
            if event.action is AuditAction.ADMIN_CREDIT and event.amount is not None:
                total += event.amount
        return total

    def latest(self) -> AuditEvent | None:
        return self._entries[-1] if self._entries else None


__all__ = ["AuditAction", "AuditEvent", "AuditLog"]
