"""SQLModel tables and the database-backed :class:`PiggyBankStore`."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence, TypeVar
from uuid import uuid4

from sqlalchemy import Column, DateTime, delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, Session, SQLModel, create_engine, select

from .crypto import EncryptedAmount
from .exceptions import PiggyBankNotFoundError, StoreUnavailableError
from .models import (
    ChangeEvent,
    ChangeKind,
    GoalRecord,
    GuestGrant,
    PiggyBankRecord,
    Transaction,
    TransactionEntry,
    TransactionType,
    transaction_payload,
    utcnow,
)
from .money import from_cents, to_cents
from .store import PiggyBankStore

if TYPE_CHECKING:  # pragma: no cover
    from .realtime import ChangeFeed

T = TypeVar("T")

FEATURE_COLUMNS = ("glitter_enabled", "rainbow_enabled", "safe_lock_enabled", "diamond_skin_enabled")


def _new_id() -> str:
    return str(uuid4())


class UTCDateTime(TypeDecorator):
    """Timestamp column holding UTC.

    Values are stored without an offset and come back timezone-aware, so a
    watermark read from a row compares equal to the one written.  Naive input
    is taken to be UTC already.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None or value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _timestamp(*, index: bool = False) -> Any:
    return Field(default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False, index=index))


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class PiggyBankRow(SQLModel, table=True):
    __tablename__ = "piggy_banks"

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: Optional[str] = Field(default=None, index=True)
    name: str = "Sparbox"
    color: str = "blue"
    balance: str
    pairing_code: Optional[str] = Field(default=None, index=True)
    lock_state: Optional[str] = None
    glitter_enabled: bool = False
    rainbow_enabled: bool = False
    safe_lock_enabled: bool = False
    diamond_skin_enabled: bool = False
    created_at: datetime = _timestamp()
    updated_at: datetime = _timestamp()


class TransactionRow(SQLModel, table=True):
    __tablename__ = "transactions"

    seq: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(default_factory=_new_id, index=True, unique=True)
    piggy_bank_id: str = Field(index=True)
    title: str = ""
    amount_cents: int
    type: str  # deposit|withdrawal|transfer
    created_at: datetime = _timestamp(index=True)


class GoalRow(SQLModel, table=True):
    __tablename__ = "goals"

    id: str = Field(default_factory=_new_id, primary_key=True)
    piggy_bank_id: str = Field(index=True)
    title: str
    target_amount: str
    saved_amount: str
    allocation_percent: int = 0


class GuestRow(SQLModel, table=True):
    __tablename__ = "piggy_bank_guests"

    id: Optional[int] = Field(default=None, primary_key=True)
    piggy_bank_id: str = Field(index=True)
    user_id: Optional[str] = Field(default=None, index=True)
    access_code: str = Field(index=True)
    created_at: datetime = _timestamp()


# ---------------------------------------------------------------------------
# Database initialisation
# ---------------------------------------------------------------------------
def create_engine_for(database_url: str, *, echo: bool = False) -> Engine:
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, echo=echo, connect_args=connect_args)


def create_db_and_tables(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------
def _piggy_bank_record(row: PiggyBankRow) -> PiggyBankRecord:
    return PiggyBankRecord(
        id=row.id,
        name=row.name,
        balance=EncryptedAmount(row.balance),
        updated_at=row.updated_at,
        created_at=row.created_at,
        color=row.color,
        user_id=row.user_id,
        lock_state=row.lock_state,
        pairing_code=row.pairing_code,
        features={column: bool(getattr(row, column)) for column in FEATURE_COLUMNS},
    )


def _transaction(row: TransactionRow) -> Transaction:
    return Transaction(
        id=row.id,
        piggy_bank_id=row.piggy_bank_id,
        title=row.title,
        amount=from_cents(row.amount_cents),
        type=TransactionType(row.type),
        created_at=row.created_at,
    )


def _goal_record(row: GoalRow) -> GoalRecord:
    return GoalRecord(
        id=row.id,
        piggy_bank_id=row.piggy_bank_id,
        title=row.title,
        target_amount=EncryptedAmount(row.target_amount),
        saved_amount=EncryptedAmount(row.saved_amount),
        allocation_percent=row.allocation_percent,
    )


def _guest_grant(row: GuestRow) -> GuestGrant:
    return GuestGrant(
        piggy_bank_id=row.piggy_bank_id,
        access_code=row.access_code,
        user_id=row.user_id,
        created_at=row.created_at,
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
class SQLModelStore(PiggyBankStore):
    """:class:`PiggyBankStore` backed by SQLModel sessions.

    Session work runs in a worker thread so callers on the event loop never
    block on the database.  When a ``feed`` is attached, inserts and deletes on
    ``transactions`` and detail edits on ``piggy_banks`` are published to it.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        clock: Callable[[], datetime] = utcnow,
        feed: Optional["ChangeFeed"] = None,
    ) -> None:
        self.engine = engine
        self.clock = clock
        self.feed = feed

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    async def _publish(self, event: ChangeEvent) -> None:
        if self.feed is not None:
            await self.feed.publish(event)

    # Piggy bank operations --------------------------------------------------
    async def create_piggy_bank(
        self,
        name: str,
        balance: EncryptedAmount,
        *,
        color: str = "blue",
        pairing_code: Optional[str] = None,
    ) -> PiggyBankRecord:
        def work() -> PiggyBankRecord:
            now = self.clock()
            row = PiggyBankRow(
                name=name,
                color=color,
                balance=balance.token,
                pairing_code=pairing_code,
                created_at=now,
                updated_at=now,
            )
            with Session(self.engine) as session:
                session.add(row)
                session.commit()
                session.refresh(row)
                return _piggy_bank_record(row)

        return await self._run(work)

    async def get_piggy_bank(self, piggy_bank_id: str) -> Optional[PiggyBankRecord]:
        def work() -> Optional[PiggyBankRecord]:
            with Session(self.engine) as session:
                row = session.get(PiggyBankRow, piggy_bank_id)
                return _piggy_bank_record(row) if row else None

        return await self._run(work)

    async def find_by_pairing_code(self, pairing_code: str) -> Optional[PiggyBankRecord]:
        def work() -> Optional[PiggyBankRecord]:
            with Session(self.engine) as session:
                row = session.exec(select(PiggyBankRow).where(PiggyBankRow.pairing_code == pairing_code)).first()
                return _piggy_bank_record(row) if row else None

        return await self._run(work)

    async def list_owned(self, user_id: str) -> list[PiggyBankRecord]:
        def work() -> list[PiggyBankRecord]:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(PiggyBankRow)
                    .where(PiggyBankRow.user_id == user_id)
                    .order_by(PiggyBankRow.created_at, PiggyBankRow.id)
                ).all()
                return [_piggy_bank_record(row) for row in rows]

        return await self._run(work)

    async def list_by_ids(self, piggy_bank_ids: Sequence[str]) -> list[PiggyBankRecord]:
        ids = list(dict.fromkeys(piggy_bank_ids))
        if not ids:
            return []

        def work() -> list[PiggyBankRecord]:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(PiggyBankRow)
                    .where(PiggyBankRow.id.in_(ids))  # type: ignore[union-attr]
                    .order_by(PiggyBankRow.created_at, PiggyBankRow.id)
                ).all()
                return [_piggy_bank_record(row) for row in rows]

        return await self._run(work)

    async def set_owner(self, piggy_bank_id: str, user_id: Optional[str]) -> None:
        def work() -> None:
            with Session(self.engine) as session:
                row = session.get(PiggyBankRow, piggy_bank_id)
                if row is None:
                    raise PiggyBankNotFoundError(piggy_bank_id)
                row.user_id = user_id
                session.add(row)
                session.commit()

        await self._run(work)

    async def update_details(
        self, piggy_bank_id: str, *, name: Optional[str] = None, color: Optional[str] = None
    ) -> Optional[PiggyBankRecord]:
        def work() -> tuple[Optional[PiggyBankRecord], dict]:
            with Session(self.engine) as session:
                row = session.get(PiggyBankRow, piggy_bank_id)
                if row is None:
                    return None, {}
                old = {"name": row.name, "color": row.color}
                if name is not None:
                    row.name = name
                if color is not None:
                    row.color = color
                session.add(row)
                session.commit()
                session.refresh(row)
                return _piggy_bank_record(row), old

        record, old = await self._run(work)
        if record is not None:
            await self._publish(
                ChangeEvent(
                    table="piggy_banks",
                    kind=ChangeKind.UPDATE,
                    piggy_bank_id=record.id,
                    owner_id=record.user_id,
                    new={"id": record.id, "name": record.name, "color": record.color},
                    old=old,
                    occurred_at=self.clock(),
                )
            )
        return record

    async def update_balance(
        self,
        piggy_bank_id: str,
        balance: EncryptedAmount,
        watermark: datetime,
        *,
        expected_watermark: Optional[datetime] = None,
    ) -> bool:
        statement = update(PiggyBankRow).where(PiggyBankRow.id == piggy_bank_id)
        if expected_watermark is not None:
            statement = statement.where(PiggyBankRow.updated_at == expected_watermark)
        statement = statement.values(balance=balance.token, updated_at=watermark)

        def work() -> bool:
            with Session(self.engine) as session:
                result = session.connection().execute(statement)
                session.commit()
                return result.rowcount > 0

        return await self._run(work)

    async def reset_piggy_bank(self, piggy_bank_id: str, zero_balance: EncryptedAmount, watermark: datetime) -> bool:
        def work() -> bool:
            with Session(self.engine) as session:
                row = session.get(PiggyBankRow, piggy_bank_id)
                if row is None:
                    return False
                row.balance = zero_balance.token
                row.updated_at = watermark
                row.user_id = None
                session.add(row)
                session.connection().execute(delete(GuestRow).where(GuestRow.piggy_bank_id == piggy_bank_id))
                session.commit()
                return True

        return await self._run(work)

    # Transaction log operations ---------------------------------------------
    async def insert_transactions(
        self, piggy_bank_id: str, entries: Sequence[TransactionEntry]
    ) -> list[Transaction]:
        def work() -> tuple[Optional[str], list[Transaction]]:
            with Session(self.engine) as session:
                owner = session.get(PiggyBankRow, piggy_bank_id)
                if owner is None:
                    raise PiggyBankNotFoundError(piggy_bank_id)
                rows = []
                for entry in entries:
                    row = TransactionRow(
                        piggy_bank_id=piggy_bank_id,
                        title=entry.title,
                        amount_cents=to_cents(entry.amount),
                        type=entry.type.value,
                        created_at=self.clock(),
                    )
                    session.add(row)
                    rows.append(row)
                owner_id = owner.user_id
                session.commit()
                for row in rows:
                    session.refresh(row)
                return owner_id, [_transaction(row) for row in rows]

        owner_id, inserted = await self._run(work)
        for transaction in inserted:
            await self._publish(
                ChangeEvent(
                    table="transactions",
                    kind=ChangeKind.INSERT,
                    piggy_bank_id=piggy_bank_id,
                    owner_id=owner_id,
                    new=transaction_payload(transaction),
                    occurred_at=transaction.created_at,
                )
            )
        return inserted

    async def list_transactions(
        self,
        piggy_bank_id: str,
        *,
        after: Optional[datetime] = None,
        descending: bool = False,
    ) -> list[Transaction]:
        query = select(TransactionRow).where(TransactionRow.piggy_bank_id == piggy_bank_id)
        if after is not None:
            query = query.where(TransactionRow.created_at > after)
        if descending:
            query = query.order_by(TransactionRow.created_at.desc(), TransactionRow.seq.desc())  # type: ignore[union-attr]
        else:
            query = query.order_by(TransactionRow.created_at, TransactionRow.seq)

        def work() -> list[Transaction]:
            with Session(self.engine) as session:
                return [_transaction(row) for row in session.exec(query).all()]

        return await self._run(work)

    async def delete_transaction(self, transaction_id: str) -> bool:
        def work() -> tuple[Optional[Transaction], Optional[str]]:
            with Session(self.engine) as session:
                row = session.exec(select(TransactionRow).where(TransactionRow.id == transaction_id)).first()
                if row is None:
                    return None, None
                removed = _transaction(row)
                owner = session.get(PiggyBankRow, row.piggy_bank_id)
                session.delete(row)
                session.commit()
                return removed, owner.user_id if owner else None

        removed, owner_id = await self._run(work)
        if removed is None:
            return False
        await self._publish(
            ChangeEvent(
                table="transactions",
                kind=ChangeKind.DELETE,
                piggy_bank_id=removed.piggy_bank_id,
                owner_id=owner_id,
                old=transaction_payload(removed),
                occurred_at=self.clock(),
            )
        )
        return True

    # Goal operations --------------------------------------------------------
    async def list_goals(self, piggy_bank_id: str) -> list[GoalRecord]:
        def work() -> list[GoalRecord]:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(GoalRow).where(GoalRow.piggy_bank_id == piggy_bank_id).order_by(GoalRow.title, GoalRow.id)
                ).all()
                return [_goal_record(row) for row in rows]

        return await self._run(work)

    async def save_goal(self, goal: GoalRecord) -> GoalRecord:
        def work() -> GoalRecord:
            with Session(self.engine) as session:
                row = session.get(GoalRow, goal.id)
                if row is None:
                    row = GoalRow(id=goal.id, piggy_bank_id=goal.piggy_bank_id, title=goal.title,
                                  target_amount=goal.target_amount.token, saved_amount=goal.saved_amount.token)
                row.title = goal.title
                row.target_amount = goal.target_amount.token
                row.saved_amount = goal.saved_amount.token
                row.allocation_percent = goal.allocation_percent
                session.add(row)
                session.commit()
                session.refresh(row)
                return _goal_record(row)

        return await self._run(work)

    async def delete_goal(self, goal_id: str) -> bool:
        def work() -> bool:
            with Session(self.engine) as session:
                row = session.get(GoalRow, goal_id)
                if row is None:
                    return False
                session.delete(row)
                session.commit()
                return True

        return await self._run(work)

    # Guest operations -------------------------------------------------------
    async def add_guest_grant(self, grant: GuestGrant) -> GuestGrant:
        def work() -> GuestGrant:
            row = GuestRow(
                piggy_bank_id=grant.piggy_bank_id,
                user_id=grant.user_id,
                access_code=grant.access_code,
                created_at=self.clock(),
            )
            with Session(self.engine) as session:
                session.add(row)
                session.commit()
                session.refresh(row)
                return _guest_grant(row)

        return await self._run(work)

    async def find_access_code(self, access_code: str) -> Optional[GuestGrant]:
        def work() -> Optional[GuestGrant]:
            with Session(self.engine) as session:
                row = session.exec(
                    select(GuestRow).where(GuestRow.access_code == access_code).order_by(GuestRow.id)
                ).first()
                return _guest_grant(row) if row else None

        return await self._run(work)

    async def list_guest_grants(self, user_id: str) -> list[GuestGrant]:
        def work() -> list[GuestGrant]:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(GuestRow).where(GuestRow.user_id == user_id).order_by(GuestRow.id)
                ).all()
                return [_guest_grant(row) for row in rows]

        return await self._run(work)

    async def remove_guest(self, piggy_bank_id: str, user_id: str) -> int:
        statement = delete(GuestRow).where(GuestRow.piggy_bank_id == piggy_bank_id, GuestRow.user_id == user_id)
        return await self._run(self._execute_delete, statement)

    async def remove_all_guests(self, piggy_bank_id: str) -> int:
        statement = delete(GuestRow).where(GuestRow.piggy_bank_id == piggy_bank_id)
        return await self._run(self._execute_delete, statement)

    def _execute_delete(self, statement: Any) -> int:
        with Session(self.engine) as session:
            result = session.connection().execute(statement)
            session.commit()
            return result.rowcount


__all__ = [
    "GoalRow",
    "GuestRow",
    "PiggyBankRow",
    "SQLModelStore",
    "TransactionRow",
    "create_db_and_tables",
    "create_engine_for",
]
