"""Bring a piggy bank's encrypted balance up to date with its transaction log.

The cached balance is a fold of the log: starting from the stored balance,
every transaction created after the stored watermark is added (deposits) or
subtracted (withdrawals and transfers), the total is re-encrypted, and balance
and watermark are written back in one update.  The new watermark is the wall
clock of that write.

There is no lock around read, fold and write.  Two calls racing for the same
piggy bank may both fold the same transactions and the last write wins; a
transaction committed between the read of the log and the write of the new
watermark is covered by the watermark without being folded.  The log stays
the source of truth either way.  ``ConcurrencyStrategy.OPTIMISTIC`` turns the
lost update into a compare-and-swap on the watermark with a bounded retry.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Optional

from .crypto import AmountCipher
from .exceptions import (
    BalancePersistError,
    DecryptionError,
    PiggyBankNotFoundError,
    RetrievalError,
    StoreUnavailableError,
    WatermarkConflictError,
)
from .ledger import TransactionLog, signed_amount
from .models import PiggyBankRecord, Transaction, utcnow
from .ops import StructuredLogger
from .store import PiggyBankStore


class ConcurrencyStrategy(str, Enum):
    LAST_WRITE_WINS = "last_write_wins"
    OPTIMISTIC = "optimistic"


def fold_transactions(start: Decimal, transactions: Iterable[Transaction]) -> Decimal:
    total = start
    for transaction in transactions:
        total += signed_amount(transaction)
    return total


class BalanceReconciler:
    """Run the read-fold-write cycle for one piggy bank at a time."""

    def __init__(
        self,
        store: PiggyBankStore,
        log: TransactionLog,
        cipher: AmountCipher,
        *,
        strategy: ConcurrencyStrategy = ConcurrencyStrategy.LAST_WRITE_WINS,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self._store = store
        self._log = log
        self._cipher = cipher
        self.strategy = ConcurrencyStrategy(strategy)
        self._max_attempts = max(1, max_attempts)
        self._clock = clock
        self._logger = logger or StructuredLogger()

    async def sync_balance(self, piggy_bank_id: str) -> Decimal:
        """Fold unfolded transactions into the stored balance and return the total.

        Raises :class:`PiggyBankNotFoundError`, :class:`DecryptionError` (nothing
        is written), :class:`RetrievalError`, :class:`BalancePersistError`
        (carrying the unsaved total) or, with the optimistic strategy,
        :class:`WatermarkConflictError`.
        """

        attempts = self._max_attempts if self.strategy is ConcurrencyStrategy.OPTIMISTIC else 1
        for attempt in range(1, attempts + 1):
            record = await self._read(piggy_bank_id)
            pending = await self._log.list_since(piggy_bank_id, record.updated_at)
            current = self._decrypt(record)
            if not pending:
                self._logger.log("balance.sync_skipped", piggy_bank_id=piggy_bank_id)
                return current

            total = fold_transactions(current, pending)
            if await self._write(record, total):
                self._logger.log(
                    "balance.synced",
                    piggy_bank_id=piggy_bank_id,
                    folded=len(pending),
                    attempt=attempt,
                )
                return total
            if self.strategy is ConcurrencyStrategy.LAST_WRITE_WINS:
                raise PiggyBankNotFoundError(piggy_bank_id)
            self._logger.warning("balance.conflict", piggy_bank_id=piggy_bank_id, attempt=attempt)
        raise WatermarkConflictError(piggy_bank_id, attempts)

    async def _read(self, piggy_bank_id: str) -> PiggyBankRecord:
        try:
            record = await self._store.get_piggy_bank(piggy_bank_id)
        except StoreUnavailableError as exc:
            raise RetrievalError(f"Could not read piggy bank '{piggy_bank_id}'.") from exc
        if record is None:
            raise PiggyBankNotFoundError(piggy_bank_id)
        return record

    def _decrypt(self, record: PiggyBankRecord) -> Decimal:
        try:
            return self._cipher.decrypt(record.balance)
        except DecryptionError:
            self._logger.error("balance.unreadable", piggy_bank_id=record.id)
            raise

    async def _write(self, record: PiggyBankRecord, total: Decimal) -> bool:
        blob = self._cipher.encrypt(total)
        expected = record.updated_at if self.strategy is ConcurrencyStrategy.OPTIMISTIC else None
        try:
            return await self._store.update_balance(record.id, blob, self._clock(), expected_watermark=expected)
        except StoreUnavailableError as exc:
            self._logger.error("balance.persist_failed", piggy_bank_id=record.id, error=str(exc))
            raise BalancePersistError(record.id, total) from exc


__all__ = ["BalanceReconciler", "ConcurrencyStrategy", "fold_transactions"]
