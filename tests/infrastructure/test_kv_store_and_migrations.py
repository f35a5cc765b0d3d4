from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from bayoffice.core.errors import PersistenceError
from bayoffice.infrastructure.db import DB_PATH_ENV, get_connection, resolve_db_path
from bayoffice.infrastructure.kv_store_sqlite import SQLiteKeyValueStore
from bayoffice.infrastructure.migrations import MigrationRunner


def test_migraciones_crean_kv_store_y_son_idempotentes() -> None:
    conn = sqlite3.connect(":memory:")
    runner = MigrationRunner(conn)

    assert runner.apply_all() == [1, 2]
    assert runner.apply_all() == []
    assert all(entry["applied"] for entry in runner.status())
    assert conn.execute("PRAGMA user_version").fetchone()[0] == 2


def test_rollback_elimina_la_tabla() -> None:
    conn = sqlite3.connect(":memory:")
    runner = MigrationRunner(conn)
    runner.apply_all()

    assert runner.rollback(steps=2) == [2, 1]

    tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert "kv_store" not in tables


def test_kv_store_set_get_delete(connection: sqlite3.Connection) -> None:
    store = SQLiteKeyValueStore(connection)

    store.set("services_o1", "[]")
    store.set("services_o1", '[{"id": "s1"}]')

    assert store.get("services_o1") == '[{"id": "s1"}]'
    store.delete("services_o1")
    assert store.get("services_o1") is None


def test_kv_store_traduce_errores_sqlite() -> None:
    conn = sqlite3.connect(":memory:")
    store = SQLiteKeyValueStore(conn)

    with pytest.raises(PersistenceError):
        store.get("sin_tabla")


def test_get_connection_crea_directorio_y_wal(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "bayoffice.db"

    conn = get_connection(db_path)
    try:
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
    finally:
        conn.close()

    assert db_path.exists()
    assert str(mode).lower() == "wal"


def test_resolve_db_path_admite_override_por_entorno(tmp_path: Path) -> None:
    assert resolve_db_path({DB_PATH_ENV: str(tmp_path / "cache.db")}) == tmp_path / "cache.db"


def test_resolve_db_path_por_defecto_en_datos_de_usuario(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("LOCALAPPDATA", str(tmp_path / "appdata"))

    assert resolve_db_path({}) == tmp_path / "appdata" / "BayOffice" / "bayoffice.db"
