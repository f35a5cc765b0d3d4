from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal

from bayoffice.application.mutation_queue import MutationQueue, StatusListener, SyncStatus
from bayoffice.application.realtime import RealtimeChannel, RealtimeConsumer
from bayoffice.application.reconciliation import reconcile_collection, reconcile_settings
from bayoffice.core.errors import RemoteStoreError
from bayoffice.core.metrics import metrics_registry
from bayoffice.core.observability import OperationContext
from bayoffice.core.operational_logging import log_operational_error
from bayoffice.domain.models import (
    ALL_TABLES,
    COLLECTION_TABLES,
    DEFAULT_SERVICE_DURATION_MIN,
    SETTINGS_TABLE,
    AppointmentSettings,
    Mutation,
    OwnerIdentity,
    RealtimeEvent,
    Record,
    TableName,
)
from bayoffice.domain.ports import NotificationDispatcherPort, RemoteStorePort, SubscriptionPort
from bayoffice.domain.record_mapping import (
    CONFIRMED_FIELD,
    OWNER_FIELDS,
    merge_record,
    normalize_appointment,
    normalize_record,
    normalize_service,
    normalize_staff,
    to_storage_appointment_updates,
)
from bayoffice.infrastructure.local_cache import LocalCacheStore

logger = logging.getLogger(__name__)

ContextState = Literal["uninitialized", "local_loaded", "reconciled", "live", "closed"]

BLOCK_CUSTOMER_NAME = "System Block"
SERVICE_COLUMNS = ("name", "description", "price", "duration", "color")
STATUS_MESSAGE = "Hola {name}, el estado de su cita del {date} a las {time} ha cambiado a: {status}."
# Claves que nunca viajan en un update parcial hacia el backend.
_PROTECTED_UPDATE_KEYS = {"id", CONFIRMED_FIELD, *OWNER_FIELDS}
# Objetos anidados de configuración que se fusionan clave a clave.
_NESTED_SETTINGS_KEYS = ("workingHours", "breaks")


def _iso_utc(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def utc_window(date: Any, time: Any, duration_minutes: int) -> tuple[str, str] | None:
    """Instantes UTC de inicio y fin a partir de ``date`` + ``time`` + duración."""
    try:
        start = datetime.strptime(f"{date}T{time}", "%Y-%m-%dT%H:%M").replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None
    end = start + timedelta(minutes=duration_minutes)
    return _iso_utc(start), _iso_utc(end)


def _positive_int(value: Any) -> int | None:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _find_index(records: list[Record], record_id: Any) -> int | None:
    wanted = str(record_id)
    for index, record in enumerate(records):
        if str(record.get("id")) == wanted:
            return index
    return None


class AppointmentContext:
    """Estado en memoria de agenda, servicios y personal de un propietario.

    Arranca desde la caché local (la UI nunca espera a la red), reconcilia con
    el backend cuando la sesión es real y completa, y después aplica los
    eventos realtime de uno en uno. Cada escritura es optimista: se aplica en
    memoria, se encola y se persiste.

    Estados: ``uninitialized → local_loaded → reconciled → live → closed``.
    """

    def __init__(
        self,
        owner_id: str | None,
        identity: OwnerIdentity | None,
        *,
        cache: LocalCacheStore,
        queue: MutationQueue,
        remote: RemoteStorePort | None = None,
        notifier: NotificationDispatcherPort | None = None,
        channel: RealtimeChannel | None = None,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._owner_id = owner_id or None
        self._identity = identity
        self._cache = cache
        self._queue = queue
        self._remote = remote
        self._notifier = notifier
        self._channel = channel or RealtimeChannel()
        self._id_factory = id_factory
        self._lock = threading.RLock()
        self._collections: dict[TableName, list[Record]] = {table: [] for table in COLLECTION_TABLES}
        self._settings = AppointmentSettings()
        self._state: ContextState = "uninitialized"
        self._loading = True
        self._subscription: SubscriptionPort | None = None
        self._consumer: RealtimeConsumer | None = None
        self._notify_executor: ThreadPoolExecutor | None = None
        self._ack_unsubscribe = queue.on_acknowledged(self._on_acknowledged)

    # -- lectura -------------------------------------------------------------

    @property
    def owner_id(self) -> str | None:
        return self._owner_id

    @property
    def identity(self) -> OwnerIdentity | None:
        return self._identity

    @property
    def state(self) -> ContextState:
        return self._state

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def sync_status(self) -> SyncStatus:
        return self._queue.get_status()

    def subscribe_sync_status(self, listener: StatusListener) -> Callable[[], None]:
        return self._queue.subscribe(listener)

    @property
    def appointments(self) -> list[Record]:
        return self._snapshot("appointments")

    @property
    def services(self) -> list[Record]:
        return self._snapshot("services")

    @property
    def staff(self) -> list[Record]:
        return self._snapshot("staff")

    @property
    def settings(self) -> AppointmentSettings:
        return self._settings

    def get_service(self, service_id: Any) -> Record | None:
        return self._get("services", service_id)

    def get_staff(self, staff_id: Any) -> Record | None:
        return self._get("staff", staff_id)

    # -- ciclo de vida ---------------------------------------------------------

    def start(self) -> ContextState:
        self.load_local()
        self.reconcile()
        self.start_realtime()
        return self._state

    def load_local(self) -> ContextState:
        owner_id = self._owner_id
        with self._lock:
            if self._state == "closed":
                return self._state
            if not owner_id:
                self._loading = False
                return self._state
            for table in COLLECTION_TABLES:
                cached = self._cache.load_collection(table, owner_id)
                if cached is not None:
                    self._collections[table] = [normalize_record(table, record) for record in cached]
            cached_settings = self._cache.load_settings(owner_id)
            if cached_settings:
                self._settings = AppointmentSettings.from_ui_dict(cached_settings)
            self._state = "local_loaded"
            self._loading = False
        logger.info(
            "local_snapshot_loaded owner=%s counts=%s",
            owner_id,
            {table: len(records) for table, records in self._collections.items()},
        )
        return self._state

    def can_reach_remote(self) -> bool:
        identity = self._identity
        return bool(
            self._owner_id
            and self._remote is not None
            and identity is not None
            and identity.is_cloud
            and not identity.is_skeleton
        )

    def reconcile(self) -> bool:
        """Fusiona el snapshot remoto con la cola y el estado local.

        Devuelve ``False`` sin tocar nada en sesiones demo, con identidad
        esqueleto o sin backend configurado.
        """
        owner_id = self._owner_id
        if not owner_id or self._state == "closed":
            return False
        if not self.can_reach_remote():
            logger.info(
                "reconcile_skipped owner=%s session=%s skeleton=%s",
                owner_id,
                getattr(self._identity, "session_kind", None),
                getattr(self._identity, "is_skeleton", None),
            )
            return False
        if self._state == "uninitialized":
            self.load_local()

        with OperationContext("reconcile", owner_id=owner_id):
            self._loading = True
            try:
                snapshots = self._fetch_remote(owner_id)
                with self._lock:
                    if self._state == "closed" or self._owner_id != owner_id:
                        return False
                    pending = self._queue.queue
                    for table in COLLECTION_TABLES:
                        self._collections[table] = reconcile_collection(
                            table, snapshots[table], pending, self._collections[table]
                        )
                    settings_rows = snapshots[SETTINGS_TABLE]
                    remote_row = settings_rows[0] if settings_rows else None
                    self._settings = reconcile_settings(remote_row, self._settings.to_ui_dict(), pending)
                    if self._state == "local_loaded":
                        self._state = "reconciled"
                    self._persist()
            finally:
                self._loading = False
        logger.info("reconcile_finished owner=%s", owner_id)
        return True

    def start_realtime(self, *, start_consumer: bool = True) -> bool:
        remote, owner_id = self._remote, self._owner_id
        if self._state == "closed" or not self.can_reach_remote() or remote is None or not owner_id:
            return False
        with self._lock:
            if self._subscription is not None:
                return True
            self._consumer = RealtimeConsumer(self._channel, self.apply_event, self._resync)
            self._subscription = remote.subscribe(owner_id, self._channel.publish)
            if start_consumer:
                self._consumer.start()
            self._state = "live"
        logger.info("realtime_started owner=%s", self._owner_id)
        return True

    def process_realtime(self) -> int:
        """Aplica en el hilo actual los eventos que esperan en el canal."""
        consumer = self._consumer
        if consumer is None:
            return 0
        return consumer.process_pending()

    def close(self) -> None:
        self._teardown_realtime()
        with self._lock:
            self._state = "closed"
        self._ack_unsubscribe()
        executor = self._notify_executor
        if executor is not None:
            executor.shutdown(wait=True)
            self._notify_executor = None

    def switch_identity(self, identity: OwnerIdentity | None, *, owner_id: str | None = None) -> ContextState:
        """Cambia de sesión: corta el realtime y vuelve a arrancar.

        Al pasar de una sesión demo a una real se reasigna el propietario de
        las mutaciones encoladas durante la demo.
        """
        self._teardown_realtime()
        previous = self._identity
        new_owner = owner_id if owner_id is not None else (identity.id if identity is not None else None)
        with self._lock:
            if self._state == "closed":
                return self._state
            self._identity = identity
            if new_owner != self._owner_id:
                self._owner_id = new_owner or None
                self._collections = {table: [] for table in COLLECTION_TABLES}
                self._settings = AppointmentSettings()
                self._state = "uninitialized"
            elif self._state == "live":
                self._state = "reconciled"
        if identity is not None and identity.is_cloud and previous is not None and not previous.is_cloud:
            self._queue.patch_owner_id(identity.id)
        return self.start()

    # -- eventos realtime ------------------------------------------------------

    def apply_event(self, event: RealtimeEvent) -> bool:
        """Aplica un evento de forma incremental e idempotente."""
        with self._lock:
            if self._state == "closed":
                return False
            if not self._belongs_to_owner(event.record):
                logger.warning(
                    "realtime_event_foreign_owner table=%s record=%s owner=%s",
                    event.table,
                    event.record_id,
                    self._owner_id,
                )
                return False
            if event.table == SETTINGS_TABLE:
                if event.action == "delete":
                    return False
                self._settings = AppointmentSettings.from_storage_row(event.record)
                changed = True
            else:
                changed = self._apply_collection_event(event)
            if changed:
                self._persist()
        if changed:
            metrics_registry.incrementar("eventos_realtime_aplicados", etiqueta=event.table)
        return changed

    def _apply_collection_event(self, event: RealtimeEvent) -> bool:
        record_id = event.record_id
        if record_id is None:
            return False
        records = self._collections[event.table]
        index = _find_index(records, record_id)
        if event.action == "delete":
            if index is None:
                return False
            del records[index]
            return True
        if self._pending_delete(event.table, record_id):
            return False
        record = normalize_record(event.table, {**event.record, CONFIRMED_FIELD: True})
        if event.action == "insert":
            if index is not None:
                return False
            records.append(record)
            return True
        if index is None:
            return False
        records[index] = record
        return True

    def _belongs_to_owner(self, record: Record) -> bool:
        owner = next((record[key] for key in OWNER_FIELDS if record.get(key)), None)
        return owner is None or str(owner) == self._owner_id

    def _pending_delete(self, table: TableName, record_id: str) -> bool:
        return any(
            item.action == "delete" and item.target_id == record_id for item in self._queue.pending_for(table)
        )

    def _resync(self) -> None:
        self.reconcile()

    def _on_acknowledged(self, mutation: Mutation) -> None:
        if mutation.action != "insert" or mutation.table not in COLLECTION_TABLES or not mutation.data:
            return
        with self._lock:
            records = self._collections.get(mutation.table, [])
            index = _find_index(records, mutation.data.get("id"))
            if index is None or records[index].get(CONFIRMED_FIELD) is True:
                return
            records[index] = {**records[index], CONFIRMED_FIELD: True}
            self._persist()

    # -- citas -----------------------------------------------------------------

    def add_appointment(self, appointment: Record) -> Record | None:
        owner_id = self._owner_id
        if not owner_id:
            return None
        service = self.get_service(appointment.get("serviceId")) or {}
        duration = _positive_int(service.get("duration")) or DEFAULT_SERVICE_DURATION_MIN
        window = utc_window(appointment.get("date"), appointment.get("time"), duration)
        if window is None:
            logger.warning("appointment_invalid_datetime date=%s time=%s", appointment.get("date"), appointment.get("time"))
            return None
        start_time, end_time = window
        row = {
            "id": self._id_factory(),
            "user_id": owner_id,
            "customer_name": appointment.get("customerName"),
            "customer_email": appointment.get("customerEmail"),
            "customer_phone": appointment.get("customerPhone"),
            "service_id": appointment.get("serviceId"),
            "staff_id": appointment.get("staffId"),
            "start_time": start_time,
            "end_time": end_time,
            "status": appointment.get("status") or "confirmed",
            "notes": appointment.get("notes"),
        }
        if not self._is_owner_session():
            return self._insert_public(row)
        optimistic = normalize_appointment(
            {**appointment, **row, "startTime": start_time, "endTime": end_time, CONFIRMED_FIELD: False}
        )
        return self._insert_optimistic("appointments", optimistic, row)

    def create_public_booking(self, booking: Record) -> Record | None:
        """Reserva online: entra siempre como ``pending``."""
        return self.add_appointment({**booking, "status": "pending"})

    def add_block(self, date: str, time: str, duration: int, notes: str | None = None) -> Record | None:
        owner_id = self._owner_id
        if not owner_id:
            return None
        window = utc_window(date, time, _positive_int(duration) or DEFAULT_SERVICE_DURATION_MIN)
        if window is None:
            return None
        start_time, end_time = window
        row = {
            "id": self._id_factory(),
            "user_id": owner_id,
            "start_time": start_time,
            "end_time": end_time,
            "status": "confirmed",
            "notes": notes,
            "customer_name": BLOCK_CUSTOMER_NAME,
            "type": "block",
        }
        optimistic = normalize_appointment({**row, CONFIRMED_FIELD: False})
        return self._insert_optimistic("appointments", optimistic, row)

    def update_appointment(self, appointment_id: str, updates: Record) -> bool:
        if not self._owner_id:
            return False
        with self._lock:
            records = self._collections["appointments"]
            index = _find_index(records, appointment_id)
            previous = records[index] if index is not None else None
            current = None
            if previous is not None:
                patch = dict(updates)
                if updates.get("date") and updates.get("time"):
                    patch["startTime"] = f"{updates['date']}T{updates['time']}:00Z"
                current = merge_record(previous, patch)
                records[index] = current
            storage_updates = to_storage_appointment_updates(updates)
            if storage_updates:
                self._queue.enqueue("appointments", "update", storage_updates, target_id=str(appointment_id))
            self._persist()
        new_status = updates.get("status")
        if new_status and previous is not None and previous.get("status") != new_status:
            self._notify_status_change(current or previous, str(new_status))
        return True

    def delete_appointment(self, appointment_id: str) -> bool:
        return self._delete_optimistic("appointments", appointment_id)

    # -- servicios y personal ---------------------------------------------------

    def add_service(self, service: Record) -> Record | None:
        owner_id = self._owner_id
        if not owner_id:
            return None
        row = {"id": self._id_factory(), "user_id": owner_id}
        row.update({column: service[column] for column in SERVICE_COLUMNS if column in service})
        optimistic = normalize_service({**service, **row, CONFIRMED_FIELD: False})
        return self._insert_optimistic("services", optimistic, row)

    def update_service(self, service_id: str, updates: Record) -> bool:
        if not self._owner_id:
            return False
        storage_updates = {key: value for key, value in updates.items() if key not in _PROTECTED_UPDATE_KEYS}
        with self._lock:
            records = self._collections["services"]
            index = _find_index(records, service_id)
            if index is not None:
                records[index] = merge_record(records[index], storage_updates)
            if storage_updates:
                self._queue.enqueue("services", "update", storage_updates, target_id=str(service_id))
            self._persist()
        return True

    def delete_service(self, service_id: str) -> bool:
        return self._delete_optimistic("services", service_id)

    def add_staff(self, member: Record) -> Record | None:
        owner_id = self._owner_id
        if not owner_id:
            return None
        full_name = member.get("full_name") or member.get("name")
        row = {
            key: value
            for key, value in member.items()
            if key not in ("name", "ownerId", CONFIRMED_FIELD)
        }
        row.update({"id": self._id_factory(), "user_id": owner_id, "full_name": full_name})
        optimistic = normalize_staff({**row, "name": full_name, CONFIRMED_FIELD: False})
        return self._insert_optimistic("staff", optimistic, row)

    def delete_staff(self, staff_id: str) -> bool:
        return self._delete_optimistic("staff", staff_id)

    # -- configuración -----------------------------------------------------------

    def update_settings(self, partial: dict[str, Any]) -> AppointmentSettings | None:
        owner_id = self._owner_id
        if not owner_id:
            return None
        with self._lock:
            current = self._settings.to_ui_dict()
            merged = {**current, **partial}
            for key in _NESTED_SETTINGS_KEYS:
                if isinstance(partial.get(key), dict) and isinstance(current.get(key), dict):
                    merged[key] = {**current[key], **partial[key]}
            self._settings = AppointmentSettings.from_ui_dict(merged)
            self._queue.enqueue(SETTINGS_TABLE, "update", self._settings.to_storage_row(owner_id))
            self._persist()
            return self._settings

    # -- internos -----------------------------------------------------------------

    def _is_owner_session(self) -> bool:
        # Sin identidad (procesos locales, CLI) el contexto actúa como propietario.
        return self._identity is None or self._identity.id == self._owner_id

    def _snapshot(self, table: TableName) -> list[Record]:
        with self._lock:
            return [dict(record) for record in self._collections[table]]

    def _get(self, table: TableName, record_id: Any) -> Record | None:
        if record_id is None:
            return None
        with self._lock:
            records = self._collections[table]
            index = _find_index(records, record_id)
            return dict(records[index]) if index is not None else None

    def _insert_optimistic(self, table: TableName, optimistic: Record, row: Record) -> Record:
        with self._lock:
            self._collections[table].append(optimistic)
            self._queue.enqueue(table, "insert", row)
            self._persist()
        return dict(optimistic)

    def _insert_public(self, row: Record) -> Record | None:
        """Reserva de un tercero: escritura directa, sin cola ni estado local."""
        if self._remote is None:
            logger.warning("public_booking_without_remote owner=%s", self._owner_id)
            return None
        try:
            created = self._remote.insert("appointments", row)
        except RemoteStoreError as exc:
            log_operational_error(
                "No se pudo registrar la reserva pública",
                exc=exc,
                extra={"owner_id": self._owner_id, "start_time": row.get("start_time")},
            )
            return None
        return normalize_appointment({**row, **created})

    def _delete_optimistic(self, table: TableName, record_id: str) -> bool:
        if not self._owner_id:
            return False
        with self._lock:
            records = self._collections[table]
            index = _find_index(records, record_id)
            if index is not None:
                del records[index]
            self._queue.enqueue(table, "delete", None, target_id=str(record_id))
            self._persist()
        return True

    def _fetch_remote(self, owner_id: str) -> dict[TableName, list[Record] | None]:
        with ThreadPoolExecutor(max_workers=len(ALL_TABLES), thread_name_prefix="reconcile") as executor:
            futures = {table: executor.submit(self._select, table, owner_id) for table in ALL_TABLES}
            return {table: future.result() for table, future in futures.items()}

    def _select(self, table: TableName, owner_id: str) -> list[Record] | None:
        remote = self._remote
        if remote is None:
            return None
        try:
            return remote.select_by_owner(table, owner_id)
        except RemoteStoreError as exc:
            metrics_registry.incrementar("lecturas_remotas_fallidas", etiqueta=table)
            logger.warning("remote_fetch_failed table=%s owner=%s error=%s", table, owner_id, exc)
            return None

    def _persist(self) -> bool:
        owner_id = self._owner_id
        if not owner_id:
            return False
        if all(not records for records in self._collections.values()) and self._cache.has_data(owner_id):
            logger.warning("persist_skipped_empty_state owner=%s", owner_id)
            return False
        saved = all(
            [self._cache.save_collection(table, owner_id, records) for table, records in self._collections.items()]
        )
        return self._cache.save_settings(owner_id, self._settings.to_ui_dict()) and saved

    def _teardown_realtime(self) -> None:
        with self._lock:
            subscription, self._subscription = self._subscription, None
            consumer, self._consumer = self._consumer, None
        if subscription is not None:
            subscription.unsubscribe()
        if consumer is not None:
            consumer.stop()
        # Los eventos ya encolados pertenecen a la sesión anterior.
        discarded = self._channel.discard_pending()
        if discarded:
            logger.info("realtime_events_discarded owner=%s count=%s", self._owner_id, discarded)

    def _notify_status_change(self, appointment: Record, status: str) -> None:
        contact = appointment.get("customerEmail") or appointment.get("customerPhone")
        if not contact or self._notifier is None:
            return
        message = STATUS_MESSAGE.format(
            name=appointment.get("customerName") or "",
            date=appointment.get("date") or "",
            time=appointment.get("time") or "",
            status=status,
        )
        if self._notify_executor is None:
            self._notify_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="notify")
        self._notify_executor.submit(self._dispatch, self._notifier, str(contact), message)

    @staticmethod
    def _dispatch(notifier: NotificationDispatcherPort, contact: str, message: str) -> None:
        try:
            notifier.dispatch(contact, message)
        except Exception as exc:  # noqa: BLE001
            log_operational_error("Falló el envío de la notificación de cita", exc=exc, extra={"contact": contact})
