from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from sparify.crypto import AmountCipher
from sparify.ledger import TransactionLog
from sparify.loader import AggregateLoader
from sparify.notifications import NotificationCenter
from sparify.ops import StructuredLogger
from sparify.persistence import SQLModelStore, create_db_and_tables, create_engine_for
from sparify.realtime import ChangeFeed
from sparify.reconciler import BalanceReconciler
from sparify.service import Sparify


class TickingClock:
    """Deterministic clock advancing by ``step`` on every call."""

    def __init__(
        self,
        start: datetime = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc),
        step: timedelta = timedelta(seconds=1),
    ):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + self.step
        return current

    def jump(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture()
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture()
def engine(tmp_path):
    engine = create_engine_for(f"sqlite:///{tmp_path / 'sparify.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def cipher() -> AmountCipher:
    return AmountCipher("test-secret", "test-salt", iterations=1_000)


@pytest.fixture()
def feed(logger) -> ChangeFeed:
    return ChangeFeed(logger=logger)


@pytest.fixture()
def store(engine, clock, feed) -> SQLModelStore:
    return SQLModelStore(engine, clock=clock, feed=feed)


@pytest.fixture()
def logger() -> StructuredLogger:
    return StructuredLogger()


@pytest.fixture()
def log(store) -> TransactionLog:
    return TransactionLog(store)


@pytest.fixture()
def reconciler(store, log, cipher, clock, logger) -> BalanceReconciler:
    return BalanceReconciler(store, log, cipher, clock=clock, logger=logger)


@pytest.fixture()
def loader(store, log, cipher, reconciler, logger) -> AggregateLoader:
    return AggregateLoader(store, log, cipher, reconciler, logger=logger)


@pytest.fixture()
def center() -> NotificationCenter:
    return NotificationCenter()


@pytest.fixture()
def service(store, cipher, feed, center, clock, logger) -> Sparify:
    return Sparify(store, cipher, feed=feed, emitter=center, clock=clock, logger=logger)
