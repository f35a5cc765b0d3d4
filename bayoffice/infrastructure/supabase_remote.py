from __future__ import annotations

import logging
import threading
from typing import Any, Callable, TypeVar

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

from bayoffice.core.errors import RemoteStoreError
from bayoffice.domain.models import ALL_TABLES, RealtimeEvent, Record, TableName
from bayoffice.domain.ports import RealtimeCallback, RemoteStorePort
from bayoffice.infrastructure.local_config import AppConfig

logger = logging.getLogger(__name__)

OWNER_COLUMN = "user_id"
_T = TypeVar("_T")


def build_supabase_client(config: AppConfig) -> Client:
    if not config.is_supabase_configured:
        raise RemoteStoreError("Supabase no está configurado")
    return create_client(config.supabase_url, config.supabase_anon_key)


class SupabaseRemoteStore:
    """Adaptador del backend remoto sobre el cliente de Supabase.

    Los errores de PostgREST y de transporte se traducen a ``RemoteStoreError``
    para que la capa de aplicación decida cómo degradar.
    """

    def __init__(self, client: Client, *, poll_interval_seconds: float = 15.0) -> None:
        self._client = client
        self._poll_interval_seconds = poll_interval_seconds

    def select_by_owner(self, table: TableName, owner_id: str) -> list[Record]:
        response = self._run(
            lambda: self._client.table(table).select("*").eq(OWNER_COLUMN, owner_id).execute(),
            table=table,
            operation="select",
        )
        return [dict(row) for row in (response.data or [])]

    def insert(self, table: TableName, record: Record) -> Record:
        response = self._run(
            lambda: self._client.table(table).insert(record).execute(),
            table=table,
            operation="insert",
        )
        rows = response.data or []
        return dict(rows[0]) if rows else dict(record)

    def update(self, table: TableName, record_id: str, data: Record) -> None:
        self._run(
            lambda: self._client.table(table).update(data).eq("id", record_id).execute(),
            table=table,
            operation="update",
        )

    def upsert(self, table: TableName, record: Record, on_conflict: str = "id") -> None:
        self._run(
            lambda: self._client.table(table).upsert(record, on_conflict=on_conflict).execute(),
            table=table,
            operation="upsert",
        )

    def delete(self, table: TableName, record_id: str) -> None:
        self._run(
            lambda: self._client.table(table).delete().eq("id", record_id).execute(),
            table=table,
            operation="delete",
        )

    def subscribe(self, owner_id: str, on_event: RealtimeCallback) -> "PollingSubscription":
        subscription = PollingSubscription(self, owner_id, on_event, interval_seconds=self._poll_interval_seconds)
        subscription.start()
        return subscription

    @staticmethod
    def _run(call: Callable[[], _T], *, table: str, operation: str) -> _T:
        try:
            return call()
        except APIError as exc:
            raise RemoteStoreError(
                f"Supabase rechazó {operation} en {table}: {exc.message}", table=table, operation=operation
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteStoreError(
                f"Fallo de red en {operation} sobre {table}: {exc}", table=table, operation=operation
            ) from exc


def diff_snapshots(table: TableName, previous: dict[str, Record], current: dict[str, Record]) -> list[RealtimeEvent]:
    """Eventos insert/update/delete que llevan de ``previous`` a ``current``."""
    events: list[RealtimeEvent] = []
    for record_id, record in current.items():
        before = previous.get(record_id)
        if before is None:
            events.append(RealtimeEvent(table=table, action="insert", record=record))
        elif before != record:
            events.append(RealtimeEvent(table=table, action="update", record=record))
    for record_id, record in previous.items():
        if record_id not in current:
            events.append(RealtimeEvent(table=table, action="delete", record={"id": record_id, **_owner_of(record)}))
    return events


def _owner_of(record: Record) -> dict[str, Any]:
    return {OWNER_COLUMN: record[OWNER_COLUMN]} if OWNER_COLUMN in record else {}


class PollingSubscription:
    """Suscripción realtime por sondeo periódico.

    Cada ciclo lee todas las tablas del propietario y emite la diferencia con
    el ciclo anterior. La primera lectura solo fija la línea base. Entrega
    al-menos-una-vez: tras un fallo de lectura la tabla conserva su base y
    el siguiente ciclo vuelve a comparar contra ella.
    """

    def __init__(
        self,
        remote: RemoteStorePort,
        owner_id: str,
        on_event: RealtimeCallback,
        *,
        interval_seconds: float = 15.0,
        tables: tuple[TableName, ...] = ALL_TABLES,
    ) -> None:
        self._remote = remote
        self._owner_id = owner_id
        self._on_event = on_event
        self._interval_seconds = interval_seconds
        self._tables = tables
        self._baseline: dict[TableName, dict[str, Record]] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_active(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run,
            name=f"realtime-poll-{self._owner_id[:8]}",
            daemon=True,
        )
        self._thread.start()

    def unsubscribe(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._interval_seconds + 1)

    def poll_once(self) -> int:
        emitted = 0
        for table in self._tables:
            if self._stop.is_set():
                break
            try:
                rows = self._remote.select_by_owner(table, self._owner_id)
            except RemoteStoreError as exc:
                logger.warning("realtime_poll_failed table=%s error=%s", table, exc)
                continue
            current = {str(row["id"]): row for row in rows if row.get("id") is not None}
            previous = self._baseline.get(table)
            self._baseline[table] = current
            if previous is None:
                continue
            for event in diff_snapshots(table, previous, current):
                self._on_event(event)
                emitted += 1
        return emitted

    def _run(self) -> None:
        while not self._stop.is_set():
            self.poll_once()
            self._stop.wait(self._interval_seconds)
