"""Append-only access to a piggy bank's transaction log."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Mapping, Sequence, Union

from .exceptions import InvalidTransactionError, RetrievalError, StoreUnavailableError
from .models import Transaction, TransactionEntry, TransactionType
from .money import MAX_AMOUNT, to_decimal
from .store import PiggyBankStore

EntryLike = Union[TransactionEntry, Mapping[str, object]]


def signed_amount(transaction: Transaction) -> Decimal:
    """Return the effect of ``transaction`` on the balance.

    The type tag decides the sign.  Withdrawals and transfers subtract their
    absolute value even when a row was stored with a negative amount.
    """

    magnitude = abs(transaction.amount)
    return magnitude if transaction.type.is_credit else -magnitude


def normalize_entry(entry: EntryLike) -> TransactionEntry:
    """Validate ``entry`` and return it with a positive amount.

    Accepts a :class:`TransactionEntry` or a mapping with ``title``, ``amount``
    and ``type`` keys.
    """

    if isinstance(entry, TransactionEntry):
        title, raw_amount, raw_type = entry.title, entry.amount, entry.type
    else:
        try:
            raw_amount = entry["amount"]
        except KeyError as exc:
            raise InvalidTransactionError("Transaction entry needs an amount.") from exc
        title = entry.get("title") or ""
        raw_type = entry.get("type", TransactionType.DEPOSIT)

    try:
        kind = TransactionType(raw_type)
    except ValueError as exc:
        raise InvalidTransactionError(f"Unknown transaction type: {raw_type!r}") from exc
    try:
        amount = to_decimal(raw_amount)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise InvalidTransactionError(f"Invalid amount: {raw_amount!r}") from exc
    if amount == 0:
        raise InvalidTransactionError("Transaction amount must not be zero.")
    if abs(amount) > MAX_AMOUNT:
        raise InvalidTransactionError(f"Transaction amount must not exceed {MAX_AMOUNT}.")
    if not isinstance(title, str):
        raise InvalidTransactionError("Transaction title must be text.")
    return TransactionEntry(title=title.strip(), amount=abs(amount), type=kind)


class TransactionLog:
    """Writer and reader for the ``transactions`` table of one store."""

    __slots__ = ("_store",)

    def __init__(self, store: PiggyBankStore) -> None:
        self._store = store

    async def append(self, piggy_bank_id: str, entries: Iterable[EntryLike]) -> Sequence[Transaction]:
        normalized = [normalize_entry(entry) for entry in entries]
        if not normalized:
            return ()
        try:
            return tuple(await self._store.insert_transactions(piggy_bank_id, normalized))
        except StoreUnavailableError as exc:
            raise RetrievalError(f"Could not append to piggy bank '{piggy_bank_id}'.") from exc

    async def list_since(self, piggy_bank_id: str, after: datetime) -> Sequence[Transaction]:
        """Transactions created strictly after ``after``, oldest first."""

        try:
            return tuple(await self._store.list_transactions(piggy_bank_id, after=after))
        except StoreUnavailableError as exc:
            raise RetrievalError(f"Could not read transactions of '{piggy_bank_id}'.") from exc

    async def list_all(self, piggy_bank_id: str) -> Sequence[Transaction]:
        """Every transaction of the piggy bank, newest first."""

        try:
            return tuple(await self._store.list_transactions(piggy_bank_id, descending=True))
        except StoreUnavailableError as exc:
            raise RetrievalError(f"Could not read transactions of '{piggy_bank_id}'.") from exc


__all__ = ["EntryLike", "TransactionLog", "normalize_entry", "signed_amount"]
