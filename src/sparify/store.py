"""Abstract interface of the relational store holding piggy banks and their logs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Sequence

from .crypto import EncryptedAmount
from .models import GoalRecord, GuestGrant, PiggyBankRecord, Transaction, TransactionEntry


class PiggyBankStore(ABC):
    """Row-level access to ``piggy_banks``, ``transactions``, ``goals`` and guests.

    Implementations raise :class:`~sparify.exceptions.StoreUnavailableError`
    when the backing database fails.  Creation timestamps are assigned by the
    store, never by the caller.
    """

    # Piggy bank operations
    @abstractmethod
    async def create_piggy_bank(
        self,
        name: str,
        balance: EncryptedAmount,
        *,
        color: str = "blue",
        pairing_code: Optional[str] = None,
    ) -> PiggyBankRecord:
        """Provision an unclaimed piggy bank."""

    @abstractmethod
    async def get_piggy_bank(self, piggy_bank_id: str) -> Optional[PiggyBankRecord]:
        """Get piggy bank by ID."""

    @abstractmethod
    async def find_by_pairing_code(self, pairing_code: str) -> Optional[PiggyBankRecord]:
        """Get piggy bank by the pairing code printed on the box."""

    @abstractmethod
    async def list_owned(self, user_id: str) -> list[PiggyBankRecord]:
        """List piggy banks owned by ``user_id``, oldest first."""

    @abstractmethod
    async def list_by_ids(self, piggy_bank_ids: Sequence[str]) -> list[PiggyBankRecord]:
        """List piggy banks with the given IDs, oldest first."""

    @abstractmethod
    async def set_owner(self, piggy_bank_id: str, user_id: Optional[str]) -> None:
        """Assign (or clear) the owning user."""

    @abstractmethod
    async def update_details(
        self, piggy_bank_id: str, *, name: Optional[str] = None, color: Optional[str] = None
    ) -> Optional[PiggyBankRecord]:
        """Rename or recolor a piggy bank. Returns ``None`` when it does not exist."""

    @abstractmethod
    async def update_balance(
        self,
        piggy_bank_id: str,
        balance: EncryptedAmount,
        watermark: datetime,
        *,
        expected_watermark: Optional[datetime] = None,
    ) -> bool:
        """Write balance and watermark in one update.

        When ``expected_watermark`` is given the row is only written if its
        current watermark still equals it.  Returns ``True`` when a row changed.
        """

    @abstractmethod
    async def reset_piggy_bank(self, piggy_bank_id: str, zero_balance: EncryptedAmount, watermark: datetime) -> bool:
        """Zero the balance, clear the owner and drop guest grants. Transactions are kept."""

    # Transaction log operations
    @abstractmethod
    async def insert_transactions(
        self, piggy_bank_id: str, entries: Sequence[TransactionEntry]
    ) -> list[Transaction]:
        """Append entries with server-assigned creation timestamps."""

    @abstractmethod
    async def list_transactions(
        self,
        piggy_bank_id: str,
        *,
        after: Optional[datetime] = None,
        descending: bool = False,
    ) -> list[Transaction]:
        """List transactions ordered by creation time, optionally strictly after ``after``."""

    @abstractmethod
    async def delete_transaction(self, transaction_id: str) -> bool:
        """Remove a transaction (moderation only)."""

    # Goal operations
    @abstractmethod
    async def list_goals(self, piggy_bank_id: str) -> list[GoalRecord]:
        """List goals of a piggy bank."""

    @abstractmethod
    async def save_goal(self, goal: GoalRecord) -> GoalRecord:
        """Insert or replace a goal."""

    @abstractmethod
    async def delete_goal(self, goal_id: str) -> bool:
        """Delete a goal."""

    # Guest operations
    @abstractmethod
    async def add_guest_grant(self, grant: GuestGrant) -> GuestGrant:
        """Store an access code, or a grant when ``grant.user_id`` is set."""

    @abstractmethod
    async def find_access_code(self, access_code: str) -> Optional[GuestGrant]:
        """Find any grant row carrying ``access_code``."""

    @abstractmethod
    async def list_guest_grants(self, user_id: str) -> list[GuestGrant]:
        """List grants held by ``user_id``."""

    @abstractmethod
    async def remove_guest(self, piggy_bank_id: str, user_id: str) -> int:
        """Remove the grants of one guest. Returns the number of rows removed."""

    @abstractmethod
    async def remove_all_guests(self, piggy_bank_id: str) -> int:
        """Remove every grant and access code of a piggy bank."""


__all__ = ["PiggyBankStore"]
