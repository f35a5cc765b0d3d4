from __future__ import annotations

import logging
import os
import sqlite3
from pathlib import Path
from typing import Mapping

from bayoffice.infrastructure.local_config import resolve_appdata_dir

logger = logging.getLogger(__name__)

DB_PATH_ENV = "BAY_DB_PATH"
DB_FILENAME = "bayoffice.db"
DEFAULT_BUSY_TIMEOUT_MS = 30000


def resolve_db_path(environ: Mapping[str, str] | None = None) -> Path:
    """Ruta de la caché duradera: ``BAY_DB_PATH`` o el directorio de datos del usuario."""
    env = os.environ if environ is None else environ
    override = env.get(DB_PATH_ENV)
    if override:
        return Path(override).expanduser()
    return resolve_appdata_dir() / DB_FILENAME


def configure_sqlite_connection(connection: sqlite3.Connection, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> str:
    """Aplica los PRAGMA de la caché y devuelve el ``journal_mode`` efectivo.

    Una base en memoria no admite WAL: SQLite responde ``memory`` y se acepta.
    """
    connection.row_factory = sqlite3.Row
    mode = str(connection.execute("PRAGMA journal_mode=WAL").fetchone()[0]).lower()
    connection.execute("PRAGMA synchronous=NORMAL")
    connection.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    return mode


def get_connection(
    db_path: Path | None = None,
    *,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    check_same_thread: bool = False,
) -> sqlite3.Connection:
    # La misma conexión la usan el hilo llamador y el consumidor realtime.
    path = db_path or resolve_db_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(
        path,
        check_same_thread=check_same_thread,
        timeout=max(1.0, busy_timeout_ms / 1000),
    )
    mode = configure_sqlite_connection(connection, busy_timeout_ms=busy_timeout_ms)
    logger.info("sqlite_cache_opened path=%s journal_mode=%s", path, mode)
    return connection
