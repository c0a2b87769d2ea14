"""Realtime change notifications scoped to the piggy banks a user owns."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .exceptions import SparifyError
from .loader import AggregateLoader, LoadMode
from .models import ChangeEvent, utcnow
from .notifications import NotificationEmitter, notification_for_change
from .ops import StructuredLogger

ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]
ChangePredicate = Callable[[ChangeEvent], bool]

WATCHED_TABLES = ("transactions", "piggy_banks")


class Subscription:
    """Handle returned by :meth:`ChangeFeed.subscribe`."""

    __slots__ = ("table", "predicate", "callback", "_feed")

    def __init__(self, feed: "ChangeFeed", table: str, predicate: ChangePredicate, callback: ChangeCallback) -> None:
        self._feed = feed
        self.table = table
        self.predicate = predicate
        self.callback = callback

    @property
    def active(self) -> bool:
        return self._feed.is_subscribed(self)

    def unsubscribe(self) -> None:
        self._feed.unsubscribe(self)


class ChangeFeed:
    """In-process change-notification transport.

    Publishing never waits for subscribers: each matching callback runs as its
    own task.  :meth:`drain` waits for the tasks that are still running.
    """

    def __init__(self, *, logger: Optional[StructuredLogger] = None) -> None:
        self._subscriptions: List[Subscription] = []
        self._tasks: Set[asyncio.Task] = set()
        self._logger = logger or StructuredLogger()

    def subscribe(self, table: str, predicate: ChangePredicate, callback: ChangeCallback) -> Subscription:
        subscription = Subscription(self, table, predicate, callback)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    def is_subscribed(self, subscription: Subscription) -> bool:
        return subscription in self._subscriptions

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: ChangeEvent) -> None:
        loop = asyncio.get_running_loop()
        for subscription in list(self._subscriptions):
            if subscription.table != event.table or not subscription.predicate(event):
                continue
            task = loop.create_task(subscription.callback(event))
            self._tasks.add(task)
            task.add_done_callback(lambda done, table=event.table: self._finished(done, table))

    def _finished(self, task: asyncio.Task, table: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._logger.error("realtime.callback_failed", table=table, error=repr(error))

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class SubscriptionState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBED = "subscribed"


class RealtimeSession:
    """One user's live subscription to changes on the piggy banks they own.

    On every change the owned collection is reloaded in FAST mode and handed,
    together with a notification, to the emitter.  Events for a piggy bank
    arriving within ``debounce`` of the last handled one are dropped.
    """

    def __init__(
        self,
        user_id: str,
        feed: ChangeFeed,
        loader: AggregateLoader,
        emitter: NotificationEmitter,
        *,
        debounce: timedelta = timedelta(milliseconds=500),
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self.user_id = user_id
        self._feed = feed
        self._loader = loader
        self._emitter = emitter
        self._debounce = debounce
        self._clock = clock
        self._logger = logger or StructuredLogger()
        self._subscriptions: List[Subscription] = []
        self._last_handled: Dict[str, datetime] = {}
        self.state = SubscriptionState.UNSUBSCRIBED

    @property
    def is_open(self) -> bool:
        return self.state is SubscriptionState.SUBSCRIBED

    def open(self) -> "RealtimeSession":
        if self.is_open:
            return self
        for table in WATCHED_TABLES:
            self._subscriptions.append(self._feed.subscribe(table, self._owned_by_user, self.handle))
        self.state = SubscriptionState.SUBSCRIBED
        self._logger.log("realtime.subscribed", user_id=self.user_id)
        return self

    def close(self) -> None:
        if not self.is_open:
            return
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        self._last_handled.clear()
        self.state = SubscriptionState.UNSUBSCRIBED
        self._logger.log("realtime.unsubscribed", user_id=self.user_id)

    async def __aenter__(self) -> "RealtimeSession":
        return self.open()

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def _owned_by_user(self, event: ChangeEvent) -> bool:
        return event.owner_id == self.user_id

    async def handle(self, event: ChangeEvent) -> None:
        key = event.piggy_bank_id
        now = self._clock()
        last = self._last_handled.get(key)
        if last is not None and self._debounce and now - last < self._debounce:
            self._logger.log("realtime.debounced", user_id=self.user_id, piggy_bank_id=key)
            return
        self._last_handled[key] = now

        try:
            collection = await self._loader.load_collection(self.user_id, mode=LoadMode.FAST, include_guest=False)
        except SparifyError as exc:
            self._logger.error("realtime.handler_failed", user_id=self.user_id, piggy_bank_id=key, error=repr(exc))
            return
        view = collection.get(key)
        pig_name = view.name if view else str(event.row.get("name") or "Sparbox")
        try:
            self._emitter.emit(notification_for_change(event, pig_name), collection.owned)
        except Exception as exc:
            self._logger.error(
                "realtime.handler_failed", user_id=self.user_id, piggy_bank_id=key, error=repr(exc)
            )


class RealtimeHub:
    """Keeps exactly one live :class:`RealtimeSession` per signed-in user."""

    def __init__(
        self,
        feed: ChangeFeed,
        loader: AggregateLoader,
        emitter: NotificationEmitter,
        *,
        debounce: timedelta = timedelta(milliseconds=500),
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self._feed = feed
        self._loader = loader
        self._emitter = emitter
        self._debounce = debounce
        self._clock = clock
        self._logger = logger or StructuredLogger()
        self._sessions: Dict[str, RealtimeSession] = {}

    def open(self, user_id: str) -> RealtimeSession:
        session = self._sessions.get(user_id)
        if session is not None and session.is_open:
            return session
        session = RealtimeSession(
            user_id,
            self._feed,
            self._loader,
            self._emitter,
            debounce=self._debounce,
            clock=self._clock,
            logger=self._logger,
        )
        self._sessions[user_id] = session.open()
        return session

    def close(self, user_id: str) -> bool:
        session = self._sessions.pop(user_id, None)
        if session is None:
            return False
        session.close()
        return True

    def close_all(self) -> None:
        for user_id in list(self._sessions):
            self.close(user_id)

    def session(self, user_id: str) -> Optional[RealtimeSession]:
        return self._sessions.get(user_id)


__all__ = [
    "ChangeFeed",
    "RealtimeHub",
    "RealtimeSession",
    "Subscription",
    "SubscriptionState",
]
