from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from bayoffice.core.metrics import medir_tiempo
from bayoffice.domain.models import (
    DEFAULT_WORKING_HOURS_END,
    DEFAULT_WORKING_HOURS_START,
    SETTINGS_TABLE,
    AppointmentSettings,
    Mutation,
    Record,
    TableName,
    settings_row_to_ui,
)
from bayoffice.domain.record_mapping import (
    CONFIRMED_FIELD,
    looks_confirmed,
    merge_record,
    normalize_record,
    to_ui_patch,
)

logger = logging.getLogger(__name__)


def _pending(queue: Iterable[Mutation], table: TableName) -> list[Mutation]:
    return [item for item in queue if item.table == table]


def _index_of(working: Sequence[Record], record_id: str) -> int | None:
    for index, record in enumerate(working):
        if str(record.get("id")) == record_id:
            return index
    return None


@medir_tiempo("latency.reconciliacion_ms")
def reconcile_collection(
    table: TableName,
    remote: Sequence[Record] | None,
    queue: Iterable[Mutation],
    local_snapshot: Sequence[Record] | None,
) -> list[Record]:
    """Fusiona snapshot remoto, cola pendiente y snapshot local previo.

    Pasadas en orden fijo:

    1. deletes pendientes: un registro borrado en local no resucita aunque el
       remoto todavía lo devuelva;
    2. updates pendientes, en orden de cola (el último encolado gana), fusionados
       campo a campo sobre el registro correspondiente;
    3. inserts pendientes que aún no existen: se anteponen con los updates
       posteriores de la cola ya aplicados;
    4. protección de latencia: los registros locales confirmados que el remoto
       aún no devuelve se conservan, y en ``appointments`` el ``status`` local
       prevalece si difiere y no hay update pendiente para ese id.

    ``remote=None`` significa "desconocido": se parte del snapshot local.
    """
    pending = _pending(queue, table)
    local_records = [dict(record) for record in (local_snapshot or []) if record.get("id") is not None]
    deleted_ids = {item.target_id for item in pending if item.action == "delete" and item.target_id}
    updated_ids = {item.target_id for item in pending if item.action == "update" and item.target_id}

    # Todas las pasadas trabajan en forma de UI; los payloads de la cola se
    # traducen antes de fusionarse.
    if remote is None:
        base = [normalize_record(table, record) for record in local_records]
    else:
        base = [
            normalize_record(table, {**dict(record), CONFIRMED_FIELD: True})
            for record in remote
            if record.get("id") is not None
        ]

    working = [record for record in base if str(record["id"]) not in deleted_ids]

    for item in pending:
        if item.action != "update" or not item.target_id:
            continue
        index = _index_of(working, item.target_id)
        if index is not None:
            working[index] = merge_record(working[index], to_ui_patch(table, item.data))

    for position, item in enumerate(pending):
        if item.action != "insert" or not item.data or item.data.get("id") is None:
            continue
        record_id = str(item.data["id"])
        if record_id in deleted_ids or _index_of(working, record_id) is not None:
            continue
        inserted = normalize_record(table, {**item.data, CONFIRMED_FIELD: False})
        for later in pending[position + 1 :]:
            if later.action == "update" and later.target_id == record_id:
                inserted = merge_record(inserted, to_ui_patch(table, later.data))
        working.insert(0, inserted)

    working_ids = {str(record["id"]) for record in working}
    restored = 0
    for local in local_records:
        record_id = str(local["id"])
        if record_id in working_ids or record_id in deleted_ids:
            continue
        if looks_confirmed(local):
            restored_record = normalize_record(table, local)
            for item in pending:
                if item.action == "update" and item.target_id == record_id:
                    restored_record = merge_record(restored_record, to_ui_patch(table, item.data))
            working.append(restored_record)
            working_ids.add(record_id)
            restored += 1

    if table == "appointments":
        local_by_id = {str(record["id"]): record for record in local_records}
        for index, record in enumerate(working):
            record_id = str(record["id"])
            local = local_by_id.get(record_id)
            if local is None or record_id in updated_ids or "status" not in local:
                continue
            if local.get("status") != record.get("status"):
                working[index] = {**record, "status": local["status"]}

    if restored:
        logger.info("lag_protection_restored table=%s count=%s", table, restored)
    return [normalize_record(table, record) for record in working]


def _remote_looks_default(remote_row: dict[str, Any]) -> bool:
    return (
        remote_row.get("working_hours_start") == DEFAULT_WORKING_HOURS_START
        and remote_row.get("working_hours_end") == DEFAULT_WORKING_HOURS_END
    )


def _local_hours_differ(local_ui: dict[str, Any], remote_ui: dict[str, Any]) -> bool:
    local_hours = local_ui.get("workingHours") or {}
    remote_hours = remote_ui.get("workingHours") or {}
    return any(
        local_hours.get(key) is not None and local_hours.get(key) != remote_hours.get(key)
        for key in ("start", "end")
    )


def reconcile_settings(
    remote_row: dict[str, Any] | None,
    local: dict[str, Any] | None,
    queue: Iterable[Mutation],
) -> AppointmentSettings:
    """Fusión por campos de la configuración de agenda.

    ``local`` llega en forma de UI; ``remote_row`` y los updates de la cola en
    forma de almacenamiento. Si el remoto parece una fila recién creada con
    valores por defecto y el local tiene otros, gana el local. El último
    update encolado siempre queda por encima.
    """
    local_ui = dict(local or {})
    remote_ui = settings_row_to_ui(remote_row) if remote_row is not None else None
    base = {**local_ui, **remote_ui} if remote_ui is not None else local_ui

    pending_updates = [
        item for item in _pending(queue, SETTINGS_TABLE) if item.action == "update" and item.data
    ]
    latest = settings_row_to_ui(pending_updates[-1].data) if pending_updates else {}
    merged = {**base, **latest}

    if (
        remote_row is not None
        and remote_ui is not None
        and local_ui
        and _remote_looks_default(remote_row)
        and _local_hours_differ(local_ui, remote_ui)
    ):
        logger.info("settings_remote_defaults_ignored")
        merged = {**remote_ui, **local_ui, **latest}

    return AppointmentSettings.from_ui_dict(merged)
