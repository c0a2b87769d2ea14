import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from sparify.crypto import EncryptedAmount
from sparify.exceptions import (
    BalancePersistError,
    DecryptionError,
    PiggyBankNotFoundError,
    StoreUnavailableError,
    WatermarkConflictError,
)
from sparify.ledger import TransactionLog
from sparify.models import Transaction, TransactionType
from sparify.persistence import SQLModelStore
from sparify.reconciler import BalanceReconciler, ConcurrencyStrategy, fold_transactions


class FailingWritesStore(SQLModelStore):
    async def update_balance(self, piggy_bank_id, balance, watermark, *, expected_watermark=None):
        raise StoreUnavailableError("database is read-only")


class RacingStore(SQLModelStore):
    """Lets a concurrent writer touch the row right before each compare-and-swap."""

    def __init__(self, *args, races: int = 1, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.races = races

    async def update_balance(self, piggy_bank_id, balance, watermark, *, expected_watermark=None):
        if self.races and expected_watermark is not None:
            self.races -= 1
            current = await self.get_piggy_bank(piggy_bank_id)
            await super().update_balance(
                piggy_bank_id, current.balance, current.updated_at + timedelta(microseconds=1)
            )
        return await super().update_balance(
            piggy_bank_id, balance, watermark, expected_watermark=expected_watermark
        )


def test_fold_transactions_applies_type_signs() -> None:
    def tx(amount: str, kind: TransactionType) -> Transaction:
        return Transaction("t", "p", "", Decimal(amount), kind, created_at=None)  # type: ignore[arg-type]

    folded = fold_transactions(
        Decimal("1.00"),
        [
            tx("10", TransactionType.DEPOSIT),
            tx("3", TransactionType.WITHDRAWAL),
            tx("2", TransactionType.TRANSFER),
        ],
    )
    assert folded == Decimal("6.00")
    assert fold_transactions(Decimal("4.00"), []) == Decimal("4.00")


def test_sync_folds_pending_transactions_and_moves_watermark(store, log, cipher, reconciler) -> None:
    async def scenario():
        pig = await store.create_piggy_bank("Pinky", cipher.encrypt("20.00"))
        await log.append(pig.id, [{"title": "Ice cream", "amount": "5.50", "type": "withdrawal"}])
        total = await reconciler.sync_balance(pig.id)
        return pig, total, await store.get_piggy_bank(pig.id)

    pig, total, after = asyncio.run(scenario())

    assert total == Decimal("14.50")
    assert cipher.decrypt(after.balance) == Decimal("14.50")
    assert after.updated_at > pig.updated_at


def test_second_sync_without_new_transactions_does_not_write(store, log, cipher, reconciler, logger) -> None:
    async def scenario():
        pig = await store.create_piggy_bank("Pinky", cipher.zero())
        await log.append(pig.id, [{"amount": "10"}, {"amount": "3", "type": "withdrawal"}])
        first = await reconciler.sync_balance(pig.id)
        stored = await store.get_piggy_bank(pig.id)
        second = await reconciler.sync_balance(pig.id)
        third = await reconciler.sync_balance(pig.id)
        return first, second, third, stored, await store.get_piggy_bank(pig.id)

    first, second, third, stored, after = asyncio.run(scenario())

    assert first == second == third == Decimal("7.00")
    assert after == stored
    assert len(logger.events("balance.synced")) == 1
    assert len(logger.events("balance.sync_skipped")) == 2


def test_sync_picks_up_later_transactions_only_once(store, log, cipher, reconciler) -> None:
    async def scenario():
        pig = await store.create_piggy_bank("Pinky", cipher.zero())
        await log.append(pig.id, [{"amount": "10"}])
        await reconciler.sync_balance(pig.id)
        await log.append(pig.id, [{"amount": "2.25", "type": "transfer"}])
        return await reconciler.sync_balance(pig.id), await reconciler.sync_balance(pig.id)

    assert asyncio.run(scenario()) == (Decimal("7.75"), Decimal("7.75"))


def test_unreadable_balance_is_never_overwritten(store, log, reconciler, logger) -> None:
    async def scenario():
        pig = await store.create_piggy_bank("Broken", EncryptedAmount("corrupted-token"))
        await log.append(pig.id, [{"amount": "4"}])
        with pytest.raises(DecryptionError):
            await reconciler.sync_balance(pig.id)
        return pig, await store.get_piggy_bank(pig.id)

    before, after = asyncio.run(scenario())

    assert after.balance == EncryptedAmount("corrupted-token")
    assert after.updated_at == before.updated_at
    assert logger.events("balance.unreadable")


def test_unknown_piggy_bank_raises_not_found(reconciler) -> None:
    with pytest.raises(PiggyBankNotFoundError):
        asyncio.run(reconciler.sync_balance("does-not-exist"))


def test_failed_write_reports_the_unsaved_total(engine, clock, cipher, logger) -> None:
    store = FailingWritesStore(engine, clock=clock)
    log = TransactionLog(store)
    reconciler = BalanceReconciler(store, log, cipher, clock=clock, logger=logger)

    async def scenario():
        pig = await store.create_piggy_bank("Pinky", cipher.encrypt("1.00"))
        await log.append(pig.id, [{"amount": "2.00"}])
        with pytest.raises(BalancePersistError) as excinfo:
            await reconciler.sync_balance(pig.id)
        return excinfo.value, await store.get_piggy_bank(pig.id)

    error, after = asyncio.run(scenario())

    assert error.total == Decimal("3.00")
    assert cipher.decrypt(after.balance) == Decimal("1.00")
    assert logger.events("balance.persist_failed")


def test_optimistic_strategy_retries_after_a_lost_race(engine, clock, cipher, logger) -> None:
    store = RacingStore(engine, clock=clock, races=1)
    log = TransactionLog(store)
    reconciler = BalanceReconciler(
        store, log, cipher, strategy=ConcurrencyStrategy.OPTIMISTIC, clock=clock, logger=logger
    )

    async def scenario():
        pig = await store.create_piggy_bank("Pinky", cipher.zero())
        await log.append(pig.id, [{"amount": "5"}, {"amount": "1.50", "type": "withdrawal"}])
        total = await reconciler.sync_balance(pig.id)
        return total, await store.get_piggy_bank(pig.id)

    total, after = asyncio.run(scenario())

    assert total == Decimal("3.50")
    assert cipher.decrypt(after.balance) == Decimal("3.50")
    assert len(logger.events("balance.conflict")) == 1
    assert logger.events("balance.synced")[-1]["attempt"] == 2


def test_optimistic_strategy_gives_up_after_max_attempts(engine, clock, cipher, logger) -> None:
    store = RacingStore(engine, clock=clock, races=10)
    log = TransactionLog(store)
    reconciler = BalanceReconciler(
        store, log, cipher, strategy=ConcurrencyStrategy.OPTIMISTIC, max_attempts=3, clock=clock, logger=logger
    )

    async def scenario():
        pig = await store.create_piggy_bank("Pinky", cipher.zero())
        await log.append(pig.id, [{"amount": "5"}])
        await reconciler.sync_balance(pig.id)

    with pytest.raises(WatermarkConflictError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.attempts == 3
    assert len(logger.events("balance.conflict")) == 3


def test_reset_keeps_history_out_of_the_new_balance(store, log, cipher, reconciler, clock) -> None:
    async def scenario():
        pig = await store.create_piggy_bank("Pinky", cipher.zero())
        await log.append(pig.id, [{"amount": "8"}])
        before_reset = await reconciler.sync_balance(pig.id)
        await store.reset_piggy_bank(pig.id, cipher.zero(), clock())
        after_reset = await reconciler.sync_balance(pig.id)
        await log.append(pig.id, [{"amount": "1.25"}])
        after_deposit = await reconciler.sync_balance(pig.id)
        return before_reset, after_reset, after_deposit, await log.list_all(pig.id)

    before_reset, after_reset, after_deposit, transactions = asyncio.run(scenario())

    assert before_reset == Decimal("8.00")
    assert after_reset == Decimal("0.00")
    assert after_deposit == Decimal("1.25")
    assert len(transactions) == 2
