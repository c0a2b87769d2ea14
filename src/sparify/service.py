"""High level service coordinating piggy banks, balances and realtime sessions."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal
from secrets import token_urlsafe
from typing import Iterable, Optional, Sequence
from uuid import uuid4

from .admin import AuditAction, AuditEvent, AuditLog
from .config import CONCURRENCY_OPTIMISTIC, Settings
from .crypto import AmountCipher
from .exceptions import (
    AccessDeniedError,
    GoalNotFoundError,
    InvalidTransactionError,
    LoadTimeoutError,
    PiggyBankNotFoundError,
    RetrievalError,
    StoreUnavailableError,
)
from .ledger import EntryLike, TransactionLog, normalize_entry
from .loader import AggregateLoader, LoadMode
from .models import (
    GoalRecord,
    GoalView,
    GuestGrant,
    PiggyBankCollection,
    PiggyBankRecord,
    PiggyBankView,
    Role,
    Transaction,
    TransactionEntry,
    TransactionType,
    utcnow,
)
from .money import AmountLike, require_positive, require_within_limit, to_decimal
from .notifications import NotificationCenter, NotificationEmitter
from .ops import StructuredLogger
from .persistence import SQLModelStore, create_db_and_tables, create_engine_for
from .realtime import ChangeFeed, RealtimeHub, RealtimeSession
from .reconciler import BalanceReconciler, ConcurrencyStrategy
from .store import PiggyBankStore


class Sparify:
    """Entry point used by the web app and by integrations.

    Wires the cipher, transaction log, reconciler, aggregate loader and the
    realtime hub around one :class:`PiggyBankStore`.  ``feed`` must be the feed
    the store publishes its changes to.
    """

    __slots__ = (
        "_store",
        "_cipher",
        "_clock",
        "_logger",
        "_log",
        "_reconciler",
        "_loader",
        "_notifications",
        "_feed",
        "_realtime",
        "_audit_log",
        "_load_timeout",
    )

    def __init__(
        self,
        store: PiggyBankStore,
        cipher: AmountCipher,
        *,
        feed: Optional[ChangeFeed] = None,
        emitter: Optional[NotificationEmitter] = None,
        strategy: ConcurrencyStrategy = ConcurrencyStrategy.LAST_WRITE_WINS,
        max_sync_attempts: int = 3,
        load_timeout: Optional[float] = 15.0,
        debounce: timedelta = timedelta(milliseconds=500),
        clock=utcnow,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._clock = clock
        self._logger = logger or StructuredLogger()
        self._log = TransactionLog(store)
        self._reconciler = BalanceReconciler(
            store,
            self._log,
            cipher,
            strategy=strategy,
            max_attempts=max_sync_attempts,
            clock=clock,
            logger=self._logger,
        )
        self._loader = AggregateLoader(store, self._log, cipher, self._reconciler, logger=self._logger)
        self._notifications = emitter if emitter is not None else NotificationCenter()
        self._feed = feed or ChangeFeed(logger=self._logger)
        self._realtime = RealtimeHub(
            self._feed,
            self._loader,
            self._notifications,
            debounce=debounce,
            clock=clock,
            logger=self._logger,
        )
        self._audit_log = AuditLog()
        self._load_timeout = load_timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        emitter: Optional[NotificationEmitter] = None,
        clock=utcnow,
    ) -> "Sparify":
        """Build a service on a SQLModel database as described by ``settings``."""

        cipher = AmountCipher.from_settings(settings)
        engine = create_engine_for(settings.database_url)
        create_db_and_tables(engine)
        logger = StructuredLogger(path=settings.log_path)
        feed = ChangeFeed(logger=logger)
        store = SQLModelStore(engine, clock=clock, feed=feed)
        strategy = (
            ConcurrencyStrategy.OPTIMISTIC
            if settings.concurrency == CONCURRENCY_OPTIMISTIC
            else ConcurrencyStrategy.LAST_WRITE_WINS
        )
        return cls(
            store,
            cipher,
            feed=feed,
            emitter=emitter,
            strategy=strategy,
            max_sync_attempts=settings.max_sync_attempts,
            load_timeout=settings.load_timeout,
            debounce=settings.debounce,
            clock=clock,
            logger=logger,
        )

    # ------------------------------------------------------------------
    # Component access
    # ------------------------------------------------------------------
    @property
    def store(self) -> PiggyBankStore:
        return self._store

    @property
    def cipher(self) -> AmountCipher:
        return self._cipher

    @property
    def transactions(self) -> TransactionLog:
        return self._log

    @property
    def reconciler(self) -> BalanceReconciler:
        return self._reconciler

    @property
    def loader(self) -> AggregateLoader:
        return self._loader

    @property
    def notifications(self) -> NotificationEmitter:
        return self._notifications

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    @property
    def realtime(self) -> RealtimeHub:
        return self._realtime

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def sign_in(self, user_id: str) -> RealtimeSession:
        """Open (or reuse) the realtime session of ``user_id``."""

        return self._realtime.open(user_id)

    def sign_out(self, user_id: str) -> bool:
        return self._realtime.close(user_id)

    async def close(self) -> None:
        self._realtime.close_all()
        await self._feed.drain()

    # ------------------------------------------------------------------
    # Provisioning and roles
    # ------------------------------------------------------------------
    async def provision_piggy_bank(
        self, name: str = "Sparbox", *, color: str = "blue", pairing_code: Optional[str] = None
    ) -> PiggyBankRecord:
        """Create an unclaimed piggy bank holding ``encrypt(0)``."""

        code = pairing_code or token_urlsafe(8)
        return await self._call_store(
            self._store.create_piggy_bank(name, self._cipher.zero(), color=color, pairing_code=code)
        )

    async def role_for(self, user_id: str, piggy_bank_id: str) -> Optional[Role]:
        record = await self._get(piggy_bank_id)
        return await self._role(user_id, record)

    async def claim_piggy_bank(self, user_id: str, pairing_code: str) -> PiggyBankRecord:
        record = await self._call_store(self._store.find_by_pairing_code(pairing_code))
        if record is None:
            raise PiggyBankNotFoundError(pairing_code, "No piggy bank uses this pairing code.")
        if record.user_id == user_id:
            return record
        if record.user_id is not None:
            raise AccessDeniedError("This piggy bank already belongs to someone else.")
        await self._call_store(self._store.set_owner(record.id, user_id))
        self._audit_log.record(user_id, AuditAction.CLAIM, record.id)
        return await self._get(record.id)

    async def create_guest_code(self, owner_id: str, piggy_bank_id: str) -> str:
        await self._require(owner_id, piggy_bank_id, {Role.OWNER})
        code = token_urlsafe(6)
        await self._call_store(self._store.add_guest_grant(GuestGrant(piggy_bank_id=piggy_bank_id, access_code=code)))
        self._audit_log.record(owner_id, AuditAction.GUEST_CODE, piggy_bank_id)
        return code

    async def join_as_guest(self, user_id: str, access_code: str) -> PiggyBankRecord:
        grant = await self._call_store(self._store.find_access_code(access_code))
        if grant is None:
            raise AccessDeniedError("Guest code is invalid.")
        record = await self._get(grant.piggy_bank_id)
        if await self._role(user_id, record) is not None:
            return record
        await self._call_store(
            self._store.add_guest_grant(
                GuestGrant(piggy_bank_id=record.id, access_code=access_code, user_id=user_id)
            )
        )
        self._audit_log.record(user_id, AuditAction.GUEST_JOIN, record.id)
        return record

    async def remove_piggy_bank(self, user_id: str, piggy_bank_id: str) -> Role:
        """Reset an owned piggy bank, or drop the caller's guest grant."""

        record, role = await self._require(user_id, piggy_bank_id, {Role.OWNER, Role.GUEST})
        if role is Role.OWNER:
            await self._call_store(self._store.reset_piggy_bank(record.id, self._cipher.zero(), self._clock()))
            self._audit_log.record(user_id, AuditAction.RESET, record.id)
        else:
            await self._call_store(self._store.remove_guest(record.id, user_id))
            self._audit_log.record(user_id, AuditAction.GUEST_LEAVE, record.id)
        return role

    async def remove_all_guests(self, owner_id: str, piggy_bank_id: str) -> int:
        await self._require(owner_id, piggy_bank_id, {Role.OWNER})
        removed = await self._call_store(self._store.remove_all_guests(piggy_bank_id))
        self._audit_log.record(
            owner_id, AuditAction.GUESTS_REMOVED, piggy_bank_id, details={"count": removed}
        )
        return removed

    async def activity(self, owner_id: str, piggy_bank_id: str) -> tuple[Sequence[AuditEvent], Decimal]:
        """Audit events of the current ownership and the sum of admin credits in it."""

        await self._require(owner_id, piggy_bank_id, {Role.OWNER})
        return self._audit_log.history(piggy_bank_id), self._audit_log.credited_total(piggy_bank_id)

    async def update_details(
        self, user_id: str, piggy_bank_id: str, *, name: Optional[str] = None, color: Optional[str] = None
    ) -> PiggyBankRecord:
        await self._require(user_id, piggy_bank_id, {Role.OWNER})
        record = await self._call_store(self._store.update_details(piggy_bank_id, name=name, color=color))
        if record is None:
            raise PiggyBankNotFoundError(piggy_bank_id)
        return record

    # ------------------------------------------------------------------
    # Balances and transactions
    # ------------------------------------------------------------------
    async def sync_balance(self, piggy_bank_id: str) -> Decimal:
        return await self._reconciler.sync_balance(piggy_bank_id)

    async def record_transactions(
        self, user_id: str, piggy_bank_id: str, entries: Iterable[EntryLike]
    ) -> Decimal:
        """Append entries for ``user_id`` and return the reconciled balance.

        Owners may record any type; guests may only contribute deposits.
        """

        normalized = [normalize_entry(entry) for entry in entries]
        if not normalized:
            raise InvalidTransactionError("At least one transaction entry is required.")
        _, role = await self._require(user_id, piggy_bank_id, {Role.OWNER, Role.GUEST})
        if role is Role.GUEST and any(entry.type is not TransactionType.DEPOSIT for entry in normalized):
            raise AccessDeniedError("Guests can only make deposits.")
        await self._log.append(piggy_bank_id, normalized)
        return await self._reconciler.sync_balance(piggy_bank_id)

    async def admin_add_money(self, user_id: str, amount: AmountLike, *, title: str = "Admin credit") -> Decimal:
        """Credit ``amount`` to the first piggy bank ``user_id`` owns."""

        try:
            value = require_within_limit(require_positive(to_decimal(amount)))
        except (TypeError, ValueError) as exc:
            raise InvalidTransactionError(str(exc)) from exc
        owned = await self._call_store(self._store.list_owned(user_id))
        if not owned:
            raise PiggyBankNotFoundError(user_id, f"User '{user_id}' owns no piggy bank.")
        target = owned[0]
        await self._log.append(target.id, [TransactionEntry(title=title, amount=value, type=TransactionType.DEPOSIT)])
        self._audit_log.record(user_id, AuditAction.ADMIN_CREDIT, target.id, amount=value)
        return await self._reconciler.sync_balance(target.id)

    async def list_transactions(self, user_id: str, piggy_bank_id: str) -> Sequence[Transaction]:
        await self._require(user_id, piggy_bank_id, {Role.OWNER, Role.GUEST})
        return await self._log.list_all(piggy_bank_id)

    async def delete_transaction(self, transaction_id: str) -> bool:
        """Moderation: remove a transaction from the log."""

        return await self._call_store(self._store.delete_transaction(transaction_id))

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------
    async def load_dashboard(self, user_id: str, *, mode: LoadMode = LoadMode.FAST) -> PiggyBankCollection:
        """Load owned and shared piggy banks, bounded by the configured timeout."""

        load = self._loader.load_collection(user_id, mode=mode)
        if self._load_timeout is None:
            return await load
        try:
            return await asyncio.wait_for(load, timeout=self._load_timeout)
        except asyncio.TimeoutError as exc:
            self._logger.error("loader.timeout", user_id=user_id, timeout=self._load_timeout)
            raise LoadTimeoutError(f"Loading piggy banks of '{user_id}' timed out.") from exc

    async def load_piggy_bank(
        self, user_id: str, piggy_bank_id: str, *, mode: LoadMode = LoadMode.SYNC
    ) -> PiggyBankView:
        record, role = await self._require(user_id, piggy_bank_id, {Role.OWNER, Role.GUEST})
        return await self._loader.load_piggy_bank(record, role=role, mode=mode)

    async def total_balance(self, user_id: str) -> Decimal:
        collection = await self._loader.load_collection(user_id, mode=LoadMode.FAST, include_guest=False)
        return collection.total_balance

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------
    async def add_goal(
        self,
        user_id: str,
        piggy_bank_id: str,
        title: str,
        target_amount: AmountLike,
        *,
        saved_amount: AmountLike = 0,
        allocation_percent: int = 0,
    ) -> GoalView:
        await self._require(user_id, piggy_bank_id, {Role.OWNER})
        goal = self._goal_record(str(uuid4()), piggy_bank_id, title, target_amount, saved_amount, allocation_percent)
        await self._call_store(self._store.save_goal(goal))
        return self._goal_view(goal)

    async def update_goal(
        self,
        user_id: str,
        piggy_bank_id: str,
        goal_id: str,
        title: str,
        target_amount: AmountLike,
        *,
        saved_amount: AmountLike = 0,
        allocation_percent: int = 0,
    ) -> GoalView:
        await self._require(user_id, piggy_bank_id, {Role.OWNER})
        await self._require_goal(piggy_bank_id, goal_id)
        goal = self._goal_record(goal_id, piggy_bank_id, title, target_amount, saved_amount, allocation_percent)
        await self._call_store(self._store.save_goal(goal))
        return self._goal_view(goal)

    async def delete_goal(self, user_id: str, piggy_bank_id: str, goal_id: str) -> bool:
        await self._require(user_id, piggy_bank_id, {Role.OWNER})
        await self._require_goal(piggy_bank_id, goal_id)
        return await self._call_store(self._store.delete_goal(goal_id))

    async def _require_goal(self, piggy_bank_id: str, goal_id: str) -> None:
        goals = await self._call_store(self._store.list_goals(piggy_bank_id))
        if not any(goal.id == goal_id for goal in goals):
            raise GoalNotFoundError(goal_id)

    def _goal_record(
        self,
        goal_id: str,
        piggy_bank_id: str,
        title: str,
        target_amount: AmountLike,
        saved_amount: AmountLike,
        allocation_percent: int,
    ) -> GoalRecord:
        target = require_positive(to_decimal(target_amount))
        saved = require_positive(to_decimal(saved_amount), allow_zero=True)
        if not 0 <= allocation_percent <= 100:
            raise ValueError("allocation_percent must be between 0 and 100.")
        return GoalRecord(
            id=goal_id,
            piggy_bank_id=piggy_bank_id,
            title=title.strip(),
            target_amount=self._cipher.encrypt(target),
            saved_amount=self._cipher.encrypt(saved),
            allocation_percent=allocation_percent,
        )

    def _goal_view(self, goal: GoalRecord) -> GoalView:
        return GoalView(
            id=goal.id,
            title=goal.title,
            target_amount=self._cipher.decrypt(goal.target_amount),
            saved_amount=self._cipher.decrypt(goal.saved_amount),
            allocation_percent=goal.allocation_percent,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _call_store(self, awaitable):
        try:
            return await awaitable
        except StoreUnavailableError as exc:
            raise RetrievalError(str(exc)) from exc

    async def _get(self, piggy_bank_id: str) -> PiggyBankRecord:
        record = await self._call_store(self._store.get_piggy_bank(piggy_bank_id))
        if record is None:
            raise PiggyBankNotFoundError(piggy_bank_id)
        return record

    async def _role(self, user_id: str, record: PiggyBankRecord) -> Optional[Role]:
        if record.user_id is not None and record.user_id == user_id:
            return Role.OWNER
        grants = await self._call_store(self._store.list_guest_grants(user_id))
        if any(grant.piggy_bank_id == record.id for grant in grants):
            return Role.GUEST
        return None

    async def _require(
        self, user_id: str, piggy_bank_id: str, allowed: set[Role]
    ) -> tuple[PiggyBankRecord, Role]:
        record = await self._get(piggy_bank_id)
        role = await self._role(user_id, record)
        if role is None or role not in allowed:
            raise AccessDeniedError(f"User '{user_id}' may not do this on piggy bank '{piggy_bank_id}'.")
        return record, role


__all__ = ["Sparify"]
