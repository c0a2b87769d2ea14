"""Notification primitives for Sparify."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .models import ChangeEvent, ChangeKind, PiggyBankView, TransactionType, utcnow
from .money import ZERO, format_currency, to_decimal


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"


@dataclass(slots=True, frozen=True)
class BalanceNotification:
    """User-facing message about a change to one piggy bank."""

    title: str
    message: str
    amount: Decimal
    pig_name: str
    severity: Severity = Severity.INFO
    piggy_bank_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, str]:
        return {
            "title": self.title,
            "message": self.message,
            "amount": str(self.amount),
            "pig_name": self.pig_name,
            "severity": self.severity.value,
            "piggy_bank_id": self.piggy_bank_id or "",
            "created_at": self.created_at.isoformat(),
        }

    def push_body(self) -> str:
        """Text used for push messages, e.g. ``Your piggy bank "Pinky" increased by 2.00 €!``."""

        if self.amount == ZERO:
            return self.message
        direction = "increased by" if self.severity is Severity.SUCCESS else "decreased by"
        return f'Your piggy bank "{self.pig_name}" {direction} {format_currency(self.amount)}!'


class NotificationEmitter(Protocol):
    """Sink for notifications; implementations must return without blocking."""

    def emit(self, notification: BalanceNotification, piggy_banks: Sequence[PiggyBankView]) -> None:
        ...


def notification_for_change(event: ChangeEvent, pig_name: str) -> BalanceNotification:
    """Derive the message shown to the owner for a realtime change."""

    if event.table == "piggy_banks":
        name = str(event.new.get("name") or pig_name)
        return BalanceNotification(
            title="Piggy bank updated",
            message=f"{name} was updated",
            amount=ZERO,
            pig_name=name,
            piggy_bank_id=event.piggy_bank_id,
        )

    row: Mapping[str, object] = event.row
    try:
        kind = TransactionType(row.get("type", TransactionType.DEPOSIT))
    except ValueError:
        kind = TransactionType.DEPOSIT
    try:
        amount = abs(to_decimal(row.get("amount", "0")))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        amount = ZERO
    title = str(row.get("title") or "")

    if event.kind is ChangeKind.DELETE:
        return BalanceNotification(
            title="Transaction removed",
            message=title or "A transaction was removed",
            amount=amount,
            pig_name=pig_name,
            severity=Severity.WARNING,
            piggy_bank_id=event.piggy_bank_id,
        )
    if kind.is_credit:
        return BalanceNotification(
            title="Deposit received!",
            message=title or "New deposit",
            amount=amount,
            pig_name=pig_name,
            severity=Severity.SUCCESS,
            piggy_bank_id=event.piggy_bank_id,
        )
    return BalanceNotification(
        title="Withdrawal made!",
        message=title or "Withdrawal",
        amount=amount,
        pig_name=pig_name,
        severity=Severity.INFO,
        piggy_bank_id=event.piggy_bank_id,
    )


class NotificationCenter:
    """In-memory notification inbox used for tests and integrations."""

    def __init__(self) -> None:
        self._queue: List[Tuple[BalanceNotification, Tuple[PiggyBankView, ...]]] = []
        self._sent: List[BalanceNotification] = []

    def emit(self, notification: BalanceNotification, piggy_banks: Sequence[PiggyBankView]) -> None:
        self._queue.append((notification, tuple(piggy_banks)))

    def pending(self, *, severity: Severity | None = None) -> Sequence[BalanceNotification]:
        if severity is None:
            return tuple(item for item, _ in self._queue)
        return tuple(item for item, _ in self._queue if item.severity is severity)

    def latest_snapshot(self) -> Tuple[PiggyBankView, ...]:
        return self._queue[-1][1] if self._queue else ()

    def pop_all(self) -> Sequence[BalanceNotification]:
        pending = tuple(item for item, _ in self._queue)
        self._queue.clear()
        self._sent.extend(pending)
        return pending

    def history(self) -> Sequence[BalanceNotification]:
        return tuple(self._sent)


__all__ = [
    "BalanceNotification",
    "NotificationCenter",
    "NotificationEmitter",
    "Severity",
    "notification_for_change",
]
