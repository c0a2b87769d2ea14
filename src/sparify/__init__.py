"""Sparify package: encrypted piggy bank balances kept in sync with their transaction log."""

from .admin import AuditEvent, AuditLog
from .config import Settings, load_settings
from .crypto import AmountCipher, EncryptedAmount
from .exceptions import (
    AccessDeniedError,
    BalancePersistError,
    DecryptionError,
    GoalNotFoundError,
    InvalidTransactionError,
    KeyMaterialError,
    LoadTimeoutError,
    PiggyBankNotFoundError,
    RetrievalError,
    SparifyError,
    StoreUnavailableError,
    WatermarkConflictError,
)
from .ledger import TransactionLog
from .loader import AggregateLoader, LoadMode
from .models import (
    BalanceStatus,
    ChangeEvent,
    ChangeKind,
    PiggyBankCollection,
    PiggyBankRecord,
    PiggyBankView,
    Role,
    Transaction,
    TransactionEntry,
    TransactionType,
)
from .notifications import BalanceNotification, NotificationCenter, NotificationEmitter, Severity
from .ops import StructuredLogger
from .persistence import SQLModelStore
from .realtime import ChangeFeed, RealtimeHub, RealtimeSession
from .reconciler import BalanceReconciler, ConcurrencyStrategy
from .service import Sparify
from .store import PiggyBankStore

__all__ = [
    "AccessDeniedError",
    "AggregateLoader",
    "AmountCipher",
    "AuditEvent",
    "AuditLog",
    "BalanceNotification",
    "BalancePersistError",
    "BalanceReconciler",
    "BalanceStatus",
    "ChangeEvent",
    "ChangeFeed",
    "ChangeKind",
    "ConcurrencyStrategy",
    "DecryptionError",
    "EncryptedAmount",
    "GoalNotFoundError",
    "InvalidTransactionError",
    "KeyMaterialError",
    "LoadMode",
    "LoadTimeoutError",
    "NotificationCenter",
    "NotificationEmitter",
    "PiggyBankCollection",
    "PiggyBankNotFoundError",
    "PiggyBankRecord",
    "PiggyBankStore",
    "PiggyBankView",
    "RealtimeHub",
    "RealtimeSession",
    "RetrievalError",
    "Role",
    "SQLModelStore",
    "Settings",
    "Severity",
    "Sparify",
    "SparifyError",
    "StoreUnavailableError",
    "StructuredLogger",
    "Transaction",
    "TransactionEntry",
    "TransactionLog",
    "TransactionType",
    "WatermarkConflictError",
    "load_settings",
]
