from __future__ import annotations

import logging
from typing import Any, Callable

from bayoffice.domain.models import Record, TableName

logger = logging.getLogger(__name__)

OWNER_FIELDS = ("ownerId", "user_id")
CONFIRMED_FIELD = "confirmed"
# Ids cliente recién generados sin marca explícita se consideran provisionales
# si no superan esta longitud.
PROVISIONAL_ID_MAX_LENGTH = 5

APPOINTMENT_FIELD_MAP: dict[str, str] = {
    "user_id": "ownerId",
    "customer_name": "customerName",
    "customer_email": "customerEmail",
    "customer_phone": "customerPhone",
    "service_id": "serviceId",
    "staff_id": "staffId",
    "start_time": "startTime",
    "end_time": "endTime",
    "payment_status": "paymentStatus",
}
SERVICE_FIELD_MAP: dict[str, str] = {"user_id": "ownerId"}
STAFF_FIELD_MAP: dict[str, str] = {"user_id": "ownerId", "full_name": "name"}

# Campos de staff que se conservan con ambos nombres para la UI.
STAFF_DUAL_FIELDS = {"full_name"}


def _rename(record: Record, field_map: dict[str, str], keep: set[str] | None = None) -> Record:
    keep = keep or set()
    normalized: Record = {}
    for key, value in record.items():
        ui_key = field_map.get(key)
        if ui_key is None:
            normalized.setdefault(key, value)
            continue
        if ui_key not in record:
            normalized[ui_key] = value
        if key in keep:
            normalized[key] = value
    return normalized


def split_start_time(start_time: Any) -> tuple[str | None, str | None]:
    """Devuelve ``(YYYY-MM-DD, HH:MM)`` a partir de un instante ISO combinado."""
    if not isinstance(start_time, str) or "T" not in start_time:
        return None, None
    date_part, time_part = start_time.split("T", 1)
    return date_part, time_part[:5] or None


def normalize_appointment(record: Record) -> Record:
    normalized = _rename(record, APPOINTMENT_FIELD_MAP)
    date_part, time_part = split_start_time(normalized.get("startTime"))
    if date_part and not normalized.get("date"):
        normalized["date"] = date_part
    if time_part and not normalized.get("time"):
        normalized["time"] = time_part
    normalized.setdefault("type", "appointment")
    return normalized


def normalize_service(record: Record) -> Record:
    return _rename(record, SERVICE_FIELD_MAP)


def normalize_staff(record: Record) -> Record:
    normalized = _rename(record, STAFF_FIELD_MAP, keep=STAFF_DUAL_FIELDS)
    if "name" in normalized and "full_name" not in normalized:
        normalized["full_name"] = normalized["name"]
    return normalized


FIELD_MAPS: dict[str, dict[str, str]] = {
    "appointments": APPOINTMENT_FIELD_MAP,
    "services": SERVICE_FIELD_MAP,
    "staff": STAFF_FIELD_MAP,
}

NORMALIZERS: dict[str, Callable[[Record], Record]] = {
    "appointments": normalize_appointment,
    "services": normalize_service,
    "staff": normalize_staff,
}


def normalize_record(table: TableName, record: Record) -> Record:
    normalizer = NORMALIZERS.get(table)
    if normalizer is None:
        return dict(record)
    return normalizer(record)


def to_ui_patch(table: TableName, data: Record | None) -> Record:
    """Traduce un payload parcial de almacenamiento a la forma de UI.

    A diferencia de los normalizadores, una columna mapeada sí pisa a su campo
    de UI y ``start_time`` vuelve a derivar ``date`` y ``time``: es un cambio, no
    un registro completo.
    """
    field_map = FIELD_MAPS.get(table)
    if field_map is None:
        return dict(data or {})
    patch: Record = {}
    for key, value in (data or {}).items():
        ui_key = field_map.get(key)
        if ui_key is None:
            patch.setdefault(key, value)
            continue
        patch[ui_key] = value
        if table == "staff" and key in STAFF_DUAL_FIELDS:
            patch[key] = value
    if table == "appointments":
        date_part, time_part = split_start_time(patch.get("startTime"))
        if date_part:
            patch["date"] = date_part
        if time_part:
            patch["time"] = time_part
    return patch


def merge_record(base: Record, patch: Record | None) -> Record:
    """Fusión superficial campo a campo.

    ``id`` nunca cambia y el propietario, una vez asignado, es inmutable.
    """
    merged = dict(base)
    for key, value in (patch or {}).items():
        if key == "id" and "id" in base and value != base["id"]:
            logger.warning("merge_record_id_ignored id=%s patch_id=%s", base["id"], value)
            continue
        if key in OWNER_FIELDS and base.get(key) and value != base[key]:
            logger.warning("merge_record_owner_ignored id=%s field=%s", base.get("id"), key)
            continue
        merged[key] = value
    return merged


def looks_confirmed(record: Record) -> bool:
    """Indica si un registro ya pasó por el backend remoto.

    La marca explícita ``confirmed`` manda; sin ella se conserva la heurística
    de longitud del id (los fragmentos cortos son ids cliente provisionales).
    """
    marker = record.get(CONFIRMED_FIELD)
    if isinstance(marker, bool):
        return marker
    record_id = record.get("id")
    return record_id is not None and len(str(record_id)) > PROVISIONAL_ID_MAX_LENGTH


APPOINTMENT_UPDATE_MAP: dict[str, str] = {
    "customerName": "customer_name",
    "customerEmail": "customer_email",
    "customerPhone": "customer_phone",
    "serviceId": "service_id",
    "staffId": "staff_id",
    "paymentStatus": "payment_status",
    "status": "status",
    "notes": "notes",
    "amount": "amount",
    "type": "type",
}


def to_storage_appointment_updates(updates: Record) -> Record:
    """Traduce un update parcial de UI a columnas de almacenamiento.

    ``start_time`` solo se compone si llegan a la vez ``date`` y ``time``.
    """
    db_updates: Record = {}
    for ui_key, storage_key in APPOINTMENT_UPDATE_MAP.items():
        if ui_key in updates:
            db_updates[storage_key] = updates[ui_key]
    if updates.get("date") and updates.get("time"):
        db_updates["start_time"] = f"{updates['date']}T{updates['time']}:00Z"
    return db_updates
