import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from sparify.exceptions import InvalidTransactionError, PiggyBankNotFoundError
from sparify.ledger import normalize_entry, signed_amount
from sparify.models import Transaction, TransactionEntry, TransactionType


def test_normalize_entry_accepts_mappings_and_strips_sign() -> None:
    entry = normalize_entry({"title": "  Ice cream ", "amount": "-2.50", "type": "withdrawal"})

    assert entry == TransactionEntry(title="Ice cream", amount=Decimal("2.50"), type=TransactionType.WITHDRAWAL)
    assert normalize_entry({"amount": 3}).type is TransactionType.DEPOSIT


@pytest.mark.parametrize(
    "raw",
    [
        {"title": "Gift", "amount": "0"},
        {"title": "Gift", "amount": "lots"},
        {"title": "Gift", "amount": 1, "type": "refund"},
        {"title": 42, "amount": 1},
        {"title": "No amount"},
        {"title": "Lottery", "amount": "1e30"},
        {"title": "Lottery", "amount": "1e20"},
        {"title": "Lottery", "amount": "-1000000.01", "type": "withdrawal"},
    ],
)
def test_normalize_entry_rejects_bad_input(raw) -> None:
    with pytest.raises(InvalidTransactionError):
        normalize_entry(raw)


def test_signed_amount_follows_the_type_tag() -> None:
    def tx(amount: str, kind: TransactionType) -> Transaction:
        return Transaction("t", "p", "", Decimal(amount), kind, created_at=None)  # type: ignore[arg-type]

    assert signed_amount(tx("5", TransactionType.DEPOSIT)) == Decimal("5.00")
    assert signed_amount(tx("5", TransactionType.WITHDRAWAL)) == Decimal("-5.00")
    assert signed_amount(tx("-5", TransactionType.TRANSFER)) == Decimal("-5.00")
    assert signed_amount(tx("-5", TransactionType.DEPOSIT)) == Decimal("5.00")


def test_append_assigns_ids_and_timestamps(store, log, cipher) -> None:
    async def scenario():
        pig = await store.create_piggy_bank("Pinky", cipher.zero())
        inserted = await log.append(
            pig.id,
            [
                {"title": "Pocket money", "amount": "10", "type": "deposit"},
                TransactionEntry(title="Sticker", amount=Decimal("1.20"), type=TransactionType.WITHDRAWAL),
            ],
        )
        return pig, inserted

    pig, inserted = asyncio.run(scenario())

    assert [tx.title for tx in inserted] == ["Pocket money", "Sticker"]
    assert len({tx.id for tx in inserted}) == 2
    assert all(tx.piggy_bank_id == pig.id for tx in inserted)
    assert inserted[0].created_at < inserted[1].created_at
    assert inserted[0].created_at > pig.created_at


def test_append_to_unknown_piggy_bank_fails(log) -> None:
    with pytest.raises(PiggyBankNotFoundError):
        asyncio.run(log.append("missing", [{"amount": 1}]))


def test_list_since_is_strictly_after_and_oldest_first(store, log, cipher) -> None:
    async def scenario():
        pig = await store.create_piggy_bank("Pinky", cipher.zero())
        first, second, third = await log.append(pig.id, [{"amount": 1}, {"amount": 2}, {"amount": 3}])
        since_first = await log.list_since(pig.id, first.created_at)
        since_before = await log.list_since(pig.id, first.created_at - timedelta(microseconds=1))
        since_last = await log.list_since(pig.id, third.created_at)
        newest_first = await log.list_all(pig.id)
        return (first, second, third), since_first, since_before, since_last, newest_first

    (first, second, third), since_first, since_before, since_last, newest_first = asyncio.run(scenario())

    assert [tx.id for tx in since_first] == [second.id, third.id]
    assert [tx.id for tx in since_before] == [first.id, second.id, third.id]
    assert since_last == ()
    assert [tx.id for tx in newest_first] == [third.id, second.id, first.id]


def test_empty_append_is_a_no_op(store, log, cipher) -> None:
    async def scenario():
        pig = await store.create_piggy_bank("Pinky", cipher.zero())
        return await log.append(pig.id, []), await log.list_all(pig.id)

    appended, listed = asyncio.run(scenario())
    assert appended == () and listed == ()


def test_normalize_entry_accepts_the_largest_amount() -> None:
    assert normalize_entry({"amount": "1000000"}).amount == Decimal("1000000.00")
