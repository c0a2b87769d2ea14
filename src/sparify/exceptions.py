"""Custom exception hierarchy for the Sparify package."""

from __future__ import annotations

from decimal import Decimal


class SparifyError(Exception):
    """Base class for all Sparify specific errors."""


class KeyMaterialError(SparifyError):
    """Raised at startup when the cipher secret or salt is missing."""


class DecryptionError(SparifyError):
    """Raised when a stored ciphertext cannot be decrypted with the current key."""


class StoreUnavailableError(SparifyError):
    """Raised by store implementations when the backing database fails."""


class RetrievalError(SparifyError):
    """Raised when rows could not be read from the store."""


class LoadTimeoutError(RetrievalError):
    """Raised when a full dashboard load does not finish in time."""


class PiggyBankNotFoundError(SparifyError):
    """Raised when a piggy bank lookup fails."""

    def __init__(self, piggy_bank_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Piggy bank '{piggy_bank_id}' does not exist.")
        self.piggy_bank_id = piggy_bank_id


class BalancePersistError(SparifyError):
    """Raised when a reconciled balance was computed but could not be saved.

    ``total`` is correct for immediate display but is not durably stored.
    """

    def __init__(self, piggy_bank_id: str, total: Decimal) -> None:
        super().__init__(f"Balance for piggy bank '{piggy_bank_id}' was not saved.")
        self.piggy_bank_id = piggy_bank_id
        self.total = total


class WatermarkConflictError(SparifyError):
    """Raised when optimistic reconciliation keeps losing the race for a row."""

    def __init__(self, piggy_bank_id: str, attempts: int) -> None:
        super().__init__(f"Piggy bank '{piggy_bank_id}' changed during {attempts} sync attempts.")
        self.piggy_bank_id = piggy_bank_id
        self.attempts = attempts


class GoalNotFoundError(SparifyError):
    """Raised when a requested savings goal cannot be found."""


class InvalidTransactionError(SparifyError, ValueError):
    """Raised when a transaction entry fails validation at the log boundary."""


class AccessDeniedError(SparifyError, PermissionError):
    """Raised when a user lacks the role required for an operation."""


__all__ = [
    "AccessDeniedError",
    "BalancePersistError",
    "DecryptionError",
    "GoalNotFoundError",
    "InvalidTransactionError",
    "KeyMaterialError",
    "LoadTimeoutError",
    "PiggyBankNotFoundError",
    "RetrievalError",
    "SparifyError",
    "StoreUnavailableError",
    "WatermarkConflictError",
]
