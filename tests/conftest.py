from __future__ import annotations

import sqlite3
import sys
from pathlib import Path
from typing import Any

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bayoffice.application.mutation_queue import MutationQueue
from bayoffice.core.errors import RemoteStoreError
from bayoffice.core.metrics import metrics_registry
from bayoffice.domain.models import RealtimeEvent, Record
from bayoffice.infrastructure.kv_store_memory import InMemoryKeyValueStore
from bayoffice.infrastructure.local_cache import LocalCacheStore
from bayoffice.infrastructure.migrations import run_migrations


class FakeSubscription:
    def __init__(self, remote: "FakeRemoteStore", owner_id: str, on_event) -> None:
        self.remote = remote
        self.owner_id = owner_id
        self.on_event = on_event
        self.active = True

    def unsubscribe(self) -> None:
        self.active = False


class FakeRemoteStore:
    """Backend en memoria con fallos programables por operación."""

    def __init__(self, tables: dict[str, list[Record]] | None = None) -> None:
        self.tables: dict[str, list[Record]] = {name: [dict(row) for row in rows] for name, rows in (tables or {}).items()}
        self.calls: list[tuple[str, str, Any]] = []
        self.fail_on: set[str] = set()
        self.fail_tables: set[str] = set()
        self.subscriptions: list[FakeSubscription] = []

    def _check(self, operation: str, table: str) -> None:
        if operation in self.fail_on or table in self.fail_tables:
            raise RemoteStoreError(f"fallo simulado en {operation}", table=table, operation=operation)

    def select_by_owner(self, table: str, owner_id: str) -> list[Record]:
        self.calls.append(("select", table, owner_id))
        self._check("select", table)
        return [dict(row) for row in self.tables.get(table, []) if row.get("user_id") == owner_id]

    def insert(self, table: str, record: Record) -> Record:
        self.calls.append(("insert", table, dict(record)))
        self._check("insert", table)
        self.tables.setdefault(table, []).append(dict(record))
        return dict(record)

    def update(self, table: str, record_id: str, data: Record) -> None:
        self.calls.append(("update", table, (record_id, dict(data))))
        self._check("update", table)
        for row in self.tables.get(table, []):
            if str(row.get("id")) == record_id:
                row.update(data)

    def upsert(self, table: str, record: Record, on_conflict: str = "id") -> None:
        self.calls.append(("upsert", table, (dict(record), on_conflict)))
        self._check("upsert", table)
        rows = self.tables.setdefault(table, [])
        for row in rows:
            if row.get(on_conflict) == record.get(on_conflict):
                row.update(record)
                return
        rows.append(dict(record))

    def delete(self, table: str, record_id: str) -> None:
        self.calls.append(("delete", table, record_id))
        self._check("delete", table)
        self.tables[table] = [row for row in self.tables.get(table, []) if str(row.get("id")) != record_id]

    def subscribe(self, owner_id: str, on_event) -> FakeSubscription:
        subscription = FakeSubscription(self, owner_id, on_event)
        self.subscriptions.append(subscription)
        return subscription

    def emit(self, table: str, action: str, record: Record) -> None:
        for subscription in self.subscriptions:
            if subscription.active:
                subscription.on_event(RealtimeEvent(table=table, action=action, record=dict(record)))


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def dispatch(self, contact_address: str, message: str) -> None:
        self.sent.append((contact_address, message))


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics_registry.reiniciar()
    yield
    metrics_registry.reiniciar()


@pytest.fixture
def connection() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def cache(kv_store: InMemoryKeyValueStore) -> LocalCacheStore:
    return LocalCacheStore(kv_store)


@pytest.fixture
def mutation_queue(kv_store: InMemoryKeyValueStore) -> MutationQueue:
    counter = iter(range(1, 10_000))
    return MutationQueue(
        kv_store,
        clock=lambda: "2025-03-01T10:00:00Z",
        id_factory=lambda: f"q{next(counter)}",
    )


@pytest.fixture
def fake_remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def fake_notifier() -> FakeNotifier:
    return FakeNotifier()
