"""Domain models used by the Sparify package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from .crypto import EncryptedAmount
from .money import ZERO, to_decimal


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""

    return datetime.now(timezone.utc)


class TransactionType(str, Enum):
    """Enumerates the supported types of piggy bank transactions."""

    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"

    @property
    def is_credit(self) -> bool:
        return self is TransactionType.DEPOSIT


class Role(str, Enum):
    """Capability a user holds over a piggy bank."""

    OWNER = "owner"
    GUEST = "guest"


class BalanceStatus(str, Enum):
    """Describes how trustworthy the balance in a :class:`PiggyBankView` is."""

    OK = "ok"
    UNREADABLE = "unreadable"
    UNSAVED = "unsaved"
    UNAVAILABLE = "unavailable"


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(slots=True)
class TransactionEntry:
    """A transaction waiting to be appended to a piggy bank's log."""

    title: str
    amount: Decimal
    type: TransactionType = TransactionType.DEPOSIT


@dataclass(slots=True, frozen=True)
class Transaction:
    """Represents a single immutable entry of a piggy bank's transaction log.

    ``amount`` is the stored magnitude; the ``type`` tag decides its sign.
    """

    id: str
    piggy_bank_id: str
    title: str
    amount: Decimal
    type: TransactionType
    created_at: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_decimal(self.amount))


@dataclass(slots=True, frozen=True)
class PiggyBankRecord:
    """A piggy bank row as stored, with its balance still encrypted."""

    id: str
    name: str
    balance: EncryptedAmount
    updated_at: datetime
    created_at: datetime
    color: str = "blue"
    user_id: Optional[str] = None
    lock_state: Optional[str] = None
    pairing_code: Optional[str] = None
    features: Mapping[str, bool] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class GoalRecord:
    """A savings goal row with encrypted amounts."""

    id: str
    piggy_bank_id: str
    title: str
    target_amount: EncryptedAmount
    saved_amount: EncryptedAmount
    allocation_percent: int = 0


@dataclass(slots=True, frozen=True)
class GuestGrant:
    """Grants a non-owner read and contribute access to a piggy bank."""

    piggy_bank_id: str
    access_code: str
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class HistoryPoint:
    """End-of-day balance used for charting."""

    day: date
    balance: Decimal


@dataclass(slots=True, frozen=True)
class GoalView:
    id: str
    title: str
    target_amount: Decimal
    saved_amount: Decimal
    allocation_percent: int
    readable: bool = True


@dataclass(slots=True, frozen=True)
class PiggyBankView:
    """Everything the dashboard needs to render one piggy bank."""

    id: str
    name: str
    color: str
    role: Role
    balance: Decimal
    balance_status: BalanceStatus
    connected_on: date
    history: Tuple[HistoryPoint, ...] = ()
    transactions: Tuple[Transaction, ...] = ()
    goals: Tuple[GoalView, ...] = ()
    lock_state: Optional[str] = None
    features: Mapping[str, bool] = field(default_factory=dict)
    stale: bool = False

    @property
    def has_error(self) -> bool:
        return self.balance_status in {BalanceStatus.UNREADABLE, BalanceStatus.UNAVAILABLE}


@dataclass(slots=True, frozen=True)
class PiggyBankCollection:
    """Owned and guest piggy banks of one user."""

    owned: Tuple[PiggyBankView, ...] = ()
    guest: Tuple[PiggyBankView, ...] = ()
    stale: bool = False

    @property
    def total_balance(self) -> Decimal:
        """Sum of owned balances, skipping piggy banks whose balance is broken."""

        return sum((view.balance for view in self.owned if not view.has_error), ZERO)

    def all(self) -> Tuple[PiggyBankView, ...]:
        return self.owned + self.guest

    def get(self, piggy_bank_id: str) -> Optional[PiggyBankView]:
        for view in self.all():
            if view.id == piggy_bank_id:
                return view
        return None


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    """A row change delivered by the change-notification transport."""

    table: str
    kind: ChangeKind
    piggy_bank_id: str
    owner_id: Optional[str]
    new: Mapping[str, Any] = field(default_factory=dict)
    old: Mapping[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def row(self) -> Mapping[str, Any]:
        return self.new or self.old


def transaction_payload(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "piggy_bank_id": transaction.piggy_bank_id,
        "title": transaction.title,
        "amount": str(transaction.amount),
        "type": transaction.type.value,
        "created_at": transaction.created_at.isoformat(),
    }


__all__ = [
    "BalanceStatus",
    "ChangeEvent",
    "ChangeKind",
    "GoalRecord",
    "GoalView",
    "GuestGrant",
    "HistoryPoint",
    "PiggyBankCollection",
    "PiggyBankRecord",
    "PiggyBankView",
    "Role",
    "Transaction",
    "TransactionEntry",
    "TransactionType",
    "transaction_payload",
    "utcnow",
]
