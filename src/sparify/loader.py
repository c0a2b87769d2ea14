"""Assemble dashboard view-models for piggy banks."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .crypto import AmountCipher
from .exceptions import (
    BalancePersistError,
    DecryptionError,
    PiggyBankNotFoundError,
    RetrievalError,
    SparifyError,
    StoreUnavailableError,
    WatermarkConflictError,
)
from .ledger import TransactionLog, signed_amount
from .models import (
    BalanceStatus,
    GoalRecord,
    GoalView,
    HistoryPoint,
    PiggyBankCollection,
    PiggyBankRecord,
    PiggyBankView,
    Role,
    Transaction,
)
from .money import ZERO
from .ops import StructuredLogger
from .reconciler import BalanceReconciler
from .store import PiggyBankStore


class LoadMode(str, Enum):
    FAST = "fast"  # decrypt the stored balance only
    SYNC = "sync"  # reconcile against the log first


def build_history(
    balance: Decimal,
    transactions_newest_first: Sequence[Transaction],
    created_on: date,
) -> Tuple[HistoryPoint, ...]:
    """Reconstruct end-of-day balances, oldest first.

    Walks backwards from ``balance`` undoing each transaction, adds the state
    before the first transaction at ``created_on`` and keeps only the last
    balance seen for each calendar day.
    """

    points: List[Tuple[date, Decimal]] = []
    running = balance
    for transaction in transactions_newest_first:
        points.append((transaction.created_at.date(), running))
        running -= signed_amount(transaction)
    points.append((created_on, running))
    points.reverse()

    by_day: Dict[date, Decimal] = {}
    for day, amount in points:
        by_day[day] = amount
    return tuple(HistoryPoint(day=day, balance=amount) for day, amount in by_day.items())


class AggregateLoader:
    """Build :class:`PiggyBankView` objects in FAST or SYNC mode.

    A failing balance never fails the view: it is reported through
    ``balance_status`` instead.  The last good view of every piggy bank is
    cached and served (marked ``stale``) when its rows cannot be read.
    """

    def __init__(
        self,
        store: PiggyBankStore,
        log: TransactionLog,
        cipher: AmountCipher,
        reconciler: BalanceReconciler,
        *,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self._store = store
        self._log = log
        self._cipher = cipher
        self._reconciler = reconciler
        self._logger = logger or StructuredLogger()
        self._views: Dict[str, PiggyBankView] = {}
        self._collections: Dict[str, PiggyBankCollection] = {}

    async def load_piggy_bank(
        self,
        record: PiggyBankRecord,
        *,
        role: Role = Role.OWNER,
        mode: LoadMode = LoadMode.FAST,
    ) -> PiggyBankView:
        balance, status = await self._balance(record, mode)
        transactions, goal_records = await asyncio.gather(
            self._log.list_all(record.id),
            self._goals(record.id),
        )
        if status in (BalanceStatus.UNREADABLE, BalanceStatus.UNAVAILABLE):
            history: Tuple[HistoryPoint, ...] = ()
        else:
            history = build_history(balance, transactions, record.created_at.date())
        view = PiggyBankView(
            id=record.id,
            name=record.name or "Sparbox",
            color=record.color or "blue",
            role=role,
            balance=balance,
            balance_status=status,
            connected_on=record.created_at.date(),
            history=history,
            transactions=tuple(transactions),
            goals=tuple(self._decrypt_goal(goal) for goal in goal_records),
            lock_state=record.lock_state,
            features=dict(record.features),
        )
        self._views[record.id] = view
        return view

    async def load_collection(
        self,
        user_id: str,
        *,
        mode: LoadMode = LoadMode.FAST,
        include_guest: bool = True,
    ) -> PiggyBankCollection:
        """Load every piggy bank the user owns and, optionally, those shared with them."""

        try:
            owned_records = await self._store.list_owned(user_id)
            guest_records: List[PiggyBankRecord] = []
            if include_guest:
                grants = await self._store.list_guest_grants(user_id)
                owned_ids = {record.id for record in owned_records}
                guest_ids = [grant.piggy_bank_id for grant in grants if grant.piggy_bank_id not in owned_ids]
                guest_records = await self._store.list_by_ids(guest_ids)
        except StoreUnavailableError as exc:
            cached = self._collections.get(user_id)
            if cached is None:
                raise RetrievalError(f"Could not list piggy banks of '{user_id}'.") from exc
            self._logger.warning("loader.cache_fallback", user_id=user_id, error=str(exc))
            return PiggyBankCollection(owned=cached.owned, guest=cached.guest, stale=True)

        owned = await self._load_many(owned_records, Role.OWNER, mode)
        guest = await self._load_many(guest_records, Role.GUEST, mode)
        collection = PiggyBankCollection(owned=owned, guest=guest)
        self._collections[user_id] = collection
        return collection

    def cached_view(self, piggy_bank_id: str) -> Optional[PiggyBankView]:
        return self._views.get(piggy_bank_id)

    async def _load_many(
        self, records: Iterable[PiggyBankRecord], role: Role, mode: LoadMode
    ) -> Tuple[PiggyBankView, ...]:
        records = list(records)
        results = await asyncio.gather(
            *(self.load_piggy_bank(record, role=role, mode=mode) for record in records),
            return_exceptions=True,
        )
        views: List[PiggyBankView] = []
        for record, result in zip(records, results):
            if isinstance(result, PiggyBankView):
                views.append(result)
            elif isinstance(result, SparifyError):
                views.append(self._fallback_view(record, role, result))
            else:
                raise result
        return tuple(views)

    def _fallback_view(self, record: PiggyBankRecord, role: Role, error: BaseException) -> PiggyBankView:
        self._logger.error("loader.item_failed", piggy_bank_id=record.id, error=repr(error))
        cached = self._views.get(record.id)
        if cached is not None:
            return replace(cached, role=role, stale=True)
        return PiggyBankView(
            id=record.id,
            name=record.name or "Sparbox",
            color=record.color or "blue",
            role=role,
            balance=ZERO,
            balance_status=BalanceStatus.UNAVAILABLE,
            connected_on=record.created_at.date(),
            lock_state=record.lock_state,
            features=dict(record.features),
        )

    async def _balance(self, record: PiggyBankRecord, mode: LoadMode) -> Tuple[Decimal, BalanceStatus]:
        try:
            if mode is LoadMode.SYNC:
                return await self._reconciler.sync_balance(record.id), BalanceStatus.OK
            return self._cipher.decrypt(record.balance), BalanceStatus.OK
        except DecryptionError:
            self._logger.error("balance.unreadable", piggy_bank_id=record.id)
            return ZERO, BalanceStatus.UNREADABLE
        except BalancePersistError as exc:
            return exc.total, BalanceStatus.UNSAVED
        except (RetrievalError, PiggyBankNotFoundError, WatermarkConflictError) as exc:
            self._logger.error("loader.item_failed", piggy_bank_id=record.id, error=repr(exc))
            return ZERO, BalanceStatus.UNAVAILABLE

    async def _goals(self, piggy_bank_id: str) -> List[GoalRecord]:
        try:
            return await self._store.list_goals(piggy_bank_id)
        except StoreUnavailableError as exc:
            raise RetrievalError(f"Could not read goals of '{piggy_bank_id}'.") from exc

    def _decrypt_goal(self, goal: GoalRecord) -> GoalView:
        try:
            target = self._cipher.decrypt(goal.target_amount)
            saved = self._cipher.decrypt(goal.saved_amount)
        except DecryptionError:
            self._logger.error("goal.unreadable", goal_id=goal.id, piggy_bank_id=goal.piggy_bank_id)
            return GoalView(goal.id, goal.title, ZERO, ZERO, goal.allocation_percent, readable=False)
        return GoalView(goal.id, goal.title, target, saved, goal.allocation_percent)


__all__ = ["AggregateLoader", "LoadMode", "build_history"]
