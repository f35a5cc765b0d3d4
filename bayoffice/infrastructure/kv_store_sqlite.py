from __future__ import annotations

import logging
import sqlite3
import threading
import time
from datetime import datetime, timezone
from typing import Callable, TypeVar

from bayoffice.core.errors import PersistenceError

logger = logging.getLogger(__name__)

_LOCKED_RETRY_BACKOFF_SECONDS = (0.05, 0.15, 0.3)
_T = TypeVar("_T")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _is_locked_operational_error(error: sqlite3.OperationalError) -> bool:
    return "locked" in str(error).lower()


def _run_with_locked_retry(operation: Callable[[], _T], *, context: str) -> _T:
    for attempt, delay_seconds in enumerate(_LOCKED_RETRY_BACKOFF_SECONDS, start=1):
        try:
            return operation()
        except sqlite3.OperationalError as error:
            if not _is_locked_operational_error(error):
                raise
            logger.warning(
                "SQLite locked in %s (attempt=%s/%s); retrying in %.0fms",
                context,
                attempt,
                len(_LOCKED_RETRY_BACKOFF_SECONDS),
                delay_seconds * 1000,
            )
            time.sleep(delay_seconds)

    return operation()


class SQLiteKeyValueStore:
    """Almacén clave/valor duradero sobre la tabla ``kv_store``.

    La conexión se comparte entre el hilo de la UI y el consumidor realtime,
    por eso todas las operaciones pasan por un lock.
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        def _read() -> str | None:
            row = self._connection.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            return None if row is None else str(row[0])

        with self._lock:
            try:
                return _run_with_locked_retry(_read, context=f"kv_get:{key}")
            except sqlite3.Error as exc:
                raise PersistenceError(f"No se pudo leer la clave {key!r}") from exc

    def set(self, key: str, value: str) -> None:
        def _write() -> None:
            with self._connection:
                self._connection.execute(
                    """
                    INSERT INTO kv_store (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (key, value, _now_iso()),
                )

        with self._lock:
            try:
                _run_with_locked_retry(_write, context=f"kv_set:{key}")
            except sqlite3.Error as exc:
                raise PersistenceError(f"No se pudo escribir la clave {key!r}") from exc

    def delete(self, key: str) -> None:
        with self._lock:
            try:
                with self._connection:
                    self._connection.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            except sqlite3.Error as exc:
                raise PersistenceError(f"No se pudo borrar la clave {key!r}") from exc
