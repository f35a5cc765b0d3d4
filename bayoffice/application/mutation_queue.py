from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable

from bayoffice.core.errors import PersistenceError, RemoteStoreError
from bayoffice.core.metrics import medir_tiempo, metrics_registry
from bayoffice.core.observability import OperationContext
from bayoffice.core.operational_logging import log_operational_error
from bayoffice.domain.models import Mutation, MutationAction, Record, SETTINGS_TABLE, TableName
from bayoffice.domain.ports import KeyValueStorePort, RemoteStorePort

logger = logging.getLogger(__name__)

QUEUE_STORAGE_KEY = "sync_queue"
DEFAULT_MAX_RETRIES = 10
PLACEHOLDER_OWNER_PREFIX = "0000"


@dataclass(frozen=True)
class SyncStatus:
    pending_count: int
    is_processing: bool
    last_sync_attempt: str | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class DrainReport:
    applied: int = 0
    failed: int = 0
    dropped: int = 0
    remaining: int = 0
    skipped: bool = False
    errors: list[str] = field(default_factory=list)


StatusListener = Callable[[SyncStatus], None]
AckListener = Callable[[Mutation], None]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class MutationQueue:
    """Cola FIFO duradera de escrituras pendientes de confirmar.

    Es el único registro duradero de intención no confirmada: cada cambio se
    persiste en el almacén clave/valor y se recarga al construir la cola.
    Una mutación solo sale de la cola cuando el backend la acepta o cuando
    supera ``max_retries`` intentos fallidos.
    """

    def __init__(
        self,
        store: KeyValueStorePort,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        clock: Callable[[], str] = _now_iso,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._store = store
        self._max_retries = max_retries
        self._clock = clock
        self._id_factory = id_factory
        self._lock = threading.RLock()
        self._drain_lock = threading.Lock()
        self._is_processing = False
        self._last_sync_attempt: str | None = None
        self._last_error: str | None = None
        self._listeners: list[StatusListener] = []
        self._ack_listeners: list[AckListener] = []
        self._items: list[Mutation] = self._load()

    @property
    def queue(self) -> tuple[Mutation, ...]:
        with self._lock:
            return tuple(self._items)

    def pending_for(self, table: TableName) -> list[Mutation]:
        with self._lock:
            return [item for item in self._items if item.table == table]

    def enqueue(
        self,
        table: TableName,
        action: MutationAction,
        data: Record | None = None,
        target_id: str | None = None,
    ) -> Mutation:
        mutation = Mutation(
            table=table,
            action=action,
            data=dict(data) if data is not None else None,
            target_id=target_id,
            queue_id=self._id_factory(),
            enqueued_at=self._clock(),
        )
        with self._lock:
            self._items.append(mutation)
            self._save()
        metrics_registry.incrementar("mutaciones_encoladas", etiqueta=f"{table}.{action}")
        logger.info("mutation_enqueued table=%s action=%s target=%s", table, action, target_id)
        self._notify()
        return mutation

    def get_status(self) -> SyncStatus:
        with self._lock:
            return SyncStatus(
                pending_count=len(self._items),
                is_processing=self._is_processing,
                last_sync_attempt=self._last_sync_attempt,
                last_error=self._last_error,
            )

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def on_acknowledged(self, listener: AckListener) -> Callable[[], None]:
        """Registra un callback para cada mutación aceptada por el backend."""
        with self._lock:
            self._ack_listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._ack_listeners:
                    self._ack_listeners.remove(listener)

        return _unsubscribe

    def patch_owner_id(self, new_owner_id: str) -> int:
        """Asigna el propietario real a mutaciones creadas en una sesión demo."""
        if not new_owner_id:
            return 0
        patched = 0
        with self._lock:
            updated: list[Mutation] = []
            for item in self._items:
                owner = (item.data or {}).get("user_id")
                if item.data is not None and (not owner or str(owner).startswith(PLACEHOLDER_OWNER_PREFIX)):
                    updated.append(replace(item, data={**item.data, "user_id": new_owner_id}))
                    patched += 1
                else:
                    updated.append(item)
            if patched:
                self._items = updated
                self._save()
        if patched:
            logger.info("queue_owner_patched owner=%s count=%s", new_owner_id, patched)
            self._notify()
        return patched

    @medir_tiempo("latency.drain_ms")
    def drain(self, remote: RemoteStorePort) -> DrainReport:
        """Reproduce la cola contra el backend en orden FIFO.

        El primer fallo detiene el lote para no reordenar escrituras del mismo
        registro. Si ya hay un drenado en curso la llamada no hace nada.
        """
        if not self._drain_lock.acquire(blocking=False):
            return DrainReport(remaining=len(self.queue), skipped=True)
        try:
            with self._lock:
                self._is_processing = True
                self._last_sync_attempt = self._clock()
                snapshot = list(self._items)
            self._notify()
            applied = failed = dropped = 0
            errors: list[str] = []
            with OperationContext("drain_queue"):
                for item in snapshot:
                    try:
                        self._apply(remote, item)
                    except RemoteStoreError as exc:
                        failed += 1
                        errors.append(str(exc))
                        if self._register_failure(item, exc):
                            dropped += 1
                        break
                    self._remove(item.queue_id)
                    applied += 1
                    metrics_registry.incrementar("mutaciones_sincronizadas", etiqueta=item.table)
                    self._notify_acknowledged(item)
            with self._lock:
                self._last_error = errors[-1] if errors else None
                remaining = len(self._items)
            return DrainReport(applied=applied, failed=failed, dropped=dropped, remaining=remaining, errors=errors)
        finally:
            with self._lock:
                self._is_processing = False
            self._drain_lock.release()
            self._notify()

    def _apply(self, remote: RemoteStorePort, item: Mutation) -> None:
        data = dict(item.data or {})
        if item.action == "delete":
            if not item.target_id:
                raise RemoteStoreError("Delete sin targetId", table=item.table, operation="delete")
            remote.delete(item.table, item.target_id)
        elif item.action == "insert":
            remote.upsert(item.table, data, on_conflict="id")
        elif item.target_id:
            remote.update(item.table, item.target_id, data)
        else:
            conflict_column = "user_id" if item.table == SETTINGS_TABLE else "id"
            remote.upsert(item.table, data, on_conflict=conflict_column)

    def _register_failure(self, item: Mutation, exc: RemoteStoreError) -> bool:
        with self._lock:
            current = next((queued for queued in self._items if queued.queue_id == item.queue_id), item)
            retried = current.with_retry()
            if retried.retry_count > self._max_retries:
                self._items = [queued for queued in self._items if queued.queue_id != item.queue_id]
                self._save()
                dropped = True
            else:
                self._items = [retried if queued.queue_id == item.queue_id else queued for queued in self._items]
                self._save()
                dropped = False
        if dropped:
            metrics_registry.incrementar("mutaciones_descartadas", etiqueta=item.table)
            log_operational_error(
                "Mutación descartada tras demasiados reintentos",
                exc=exc,
                extra={"table": item.table, "action": item.action, "target_id": item.target_id},
            )
        else:
            logger.warning(
                "mutation_sync_failed table=%s action=%s retry=%s error=%s",
                item.table,
                item.action,
                retried.retry_count,
                exc,
            )
        return dropped

    def _remove(self, queue_id: str) -> None:
        with self._lock:
            self._items = [item for item in self._items if item.queue_id != queue_id]
            self._save()

    def _load(self) -> list[Mutation]:
        try:
            raw = self._store.get(QUEUE_STORAGE_KEY)
        except PersistenceError as exc:
            log_operational_error("No se pudo leer la cola de sincronización", exc=exc)
            return []
        if not raw:
            return []
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            log_operational_error("Cola de sincronización corrupta, se descarta", exc=exc)
            return []
        if not isinstance(payload, list):
            logger.warning("sync_queue_shape_invalid type=%s", type(payload).__name__)
            return []
        items: list[Mutation] = []
        for entry in payload:
            if not isinstance(entry, dict):
                continue
            try:
                items.append(Mutation.from_dict(entry))
            except ValueError as exc:
                logger.warning("sync_queue_entry_skipped error=%s", exc)
        return items

    def _save(self) -> None:
        try:
            payload = json.dumps([item.to_dict() for item in self._items], ensure_ascii=False)
            self._store.set(QUEUE_STORAGE_KEY, payload)
        except (PersistenceError, TypeError, ValueError) as exc:
            log_operational_error("No se pudo persistir la cola de sincronización", exc=exc)

    def _notify(self) -> None:
        status = self.get_status()
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(status)
            except Exception as exc:  # noqa: BLE001
                logger.warning("sync_status_listener_failed error=%s", exc)

    def _notify_acknowledged(self, item: Mutation) -> None:
        with self._lock:
            listeners = list(self._ack_listeners)
        for listener in listeners:
            try:
                listener(item)
            except Exception as exc:  # noqa: BLE001
                logger.warning("sync_ack_listener_failed error=%s", exc)
