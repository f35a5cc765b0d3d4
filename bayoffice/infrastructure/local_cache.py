from __future__ import annotations

import json
import logging
from typing import Any

from bayoffice.core.errors import PersistenceError
from bayoffice.core.operational_logging import log_operational_error
from bayoffice.domain.models import COLLECTION_TABLES, SETTINGS_TABLE, Record, TableName
from bayoffice.domain.ports import KeyValueStorePort

logger = logging.getLogger(__name__)


def cache_key(table: TableName, owner_id: str) -> str:
    return f"{table}_{owner_id}"


class LocalCacheStore:
    """Últimos snapshots conocidos por propietario sobre un almacén clave/valor.

    Un JSON corrupto o un fallo del almacén nunca se propaga: se registra y se
    trata como ausencia de caché para que la UI arranque con lo que haya.
    """

    def __init__(self, store: KeyValueStorePort) -> None:
        self._store = store

    def load_collection(self, table: TableName, owner_id: str) -> list[Record] | None:
        payload = self._read_json(cache_key(table, owner_id))
        if payload is None:
            return None
        if not isinstance(payload, list):
            logger.warning("cache_shape_invalid table=%s owner=%s", table, owner_id)
            return None
        return [dict(item) for item in payload if isinstance(item, dict) and item.get("id") is not None]

    def save_collection(self, table: TableName, owner_id: str, records: list[Record]) -> bool:
        return self._write_json(cache_key(table, owner_id), records)

    def load_settings(self, owner_id: str) -> dict[str, Any] | None:
        payload = self._read_json(cache_key(SETTINGS_TABLE, owner_id))
        if payload is None:
            return None
        if not isinstance(payload, dict):
            logger.warning("cache_shape_invalid table=%s owner=%s", SETTINGS_TABLE, owner_id)
            return None
        return payload

    def save_settings(self, owner_id: str, settings: dict[str, Any]) -> bool:
        return self._write_json(cache_key(SETTINGS_TABLE, owner_id), settings)

    def has_data(self, owner_id: str) -> bool:
        """True si alguna colección duradera del propietario tiene registros."""
        for table in COLLECTION_TABLES:
            records = self.load_collection(table, owner_id)
            if records:
                return True
        return False

    def _read_json(self, key: str) -> Any | None:
        try:
            raw = self._store.get(key)
        except PersistenceError as exc:
            log_operational_error("No se pudo leer la caché local", exc=exc, extra={"key": key})
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            log_operational_error("Caché local corrupta, se ignora", exc=exc, extra={"key": key})
            return None

    def _write_json(self, key: str, payload: Any) -> bool:
        try:
            self._store.set(key, json.dumps(payload, ensure_ascii=False))
        except (PersistenceError, TypeError, ValueError) as exc:
            log_operational_error("No se pudo guardar la caché local", exc=exc, extra={"key": key})
            return False
        return True
