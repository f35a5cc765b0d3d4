from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Literal, Optional

TableName = Literal["services", "staff", "appointments", "appointment_settings"]
MutationAction = Literal["insert", "update", "delete"]
SessionKind = Literal["mock", "cloud"]
Record = dict[str, Any]

COLLECTION_TABLES: tuple[TableName, ...] = ("services", "staff", "appointments")
SETTINGS_TABLE: TableName = "appointment_settings"
ALL_TABLES: tuple[TableName, ...] = (*COLLECTION_TABLES, SETTINGS_TABLE)
MUTATION_ACTIONS: tuple[MutationAction, ...] = ("insert", "update", "delete")

WEEK_DAYS: tuple[str, ...] = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
DEFAULT_WORKING_DAYS: tuple[str, ...] = ("Mon", "Tue", "Wed", "Thu", "Fri")
DEFAULT_WORKING_HOURS_START = "09:00"
DEFAULT_WORKING_HOURS_END = "18:00"
DEFAULT_SERVICE_DURATION_MIN = 30


@dataclass(frozen=True)
class OwnerIdentity:
    """Identidad de sesión entregada por el proveedor de autenticación.

    Una identidad ``is_skeleton`` todavía no tiene perfil ni permisos cargados:
    mientras lo sea no se consulta el backend remoto. Las sesiones ``mock``
    (demo / sin conexión) nunca tocan el backend.
    """

    id: str
    is_skeleton: bool = False
    session_kind: SessionKind = "cloud"
    email: Optional[str] = None

    @property
    def is_cloud(self) -> bool:
        return self.session_kind == "cloud"


@dataclass(frozen=True)
class Mutation:
    """Escritura pendiente de confirmación por el backend remoto.

    El orden dentro de la cola es la única marca temporal con valor
    semántico: ante dos updates del mismo registro gana el último encolado.
    """

    table: TableName
    action: MutationAction
    data: Optional[Record] = None
    target_id: Optional[str] = None
    queue_id: str = ""
    enqueued_at: str = ""
    retry_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "action": self.action,
            "data": dict(self.data) if self.data is not None else None,
            "targetId": self.target_id,
            "id": self.queue_id,
            "timestamp": self.enqueued_at,
            "retryCount": self.retry_count,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Mutation":
        table = str(payload.get("table", ""))
        action = str(payload.get("action", ""))
        if table not in ALL_TABLES:
            raise ValueError(f"Tabla desconocida en mutación: {table!r}")
        if action not in MUTATION_ACTIONS:
            raise ValueError(f"Acción desconocida en mutación: {action!r}")
        data = payload.get("data")
        target_id = payload.get("targetId")
        return cls(
            table=table,  # type: ignore[arg-type]
            action=action,  # type: ignore[arg-type]
            data=dict(data) if isinstance(data, dict) else None,
            target_id=str(target_id) if target_id not in (None, "") else None,
            queue_id=str(payload.get("id", "")),
            enqueued_at=str(payload.get("timestamp", "")),
            retry_count=int(payload.get("retryCount") or 0),
        )

    def with_retry(self) -> "Mutation":
        return replace(self, retry_count=self.retry_count + 1)


@dataclass(frozen=True)
class RealtimeEvent:
    table: TableName
    action: MutationAction
    record: Record

    @property
    def record_id(self) -> str | None:
        value = self.record.get("id")
        return str(value) if value is not None else None


@dataclass(frozen=True)
class WorkingHours:
    start: str = DEFAULT_WORKING_HOURS_START
    end: str = DEFAULT_WORKING_HOURS_END


@dataclass(frozen=True)
class BreakTime:
    start: str = "13:00"
    end: str = "14:00"
    enabled: bool = False


@dataclass(frozen=True)
class DaySchedule:
    enabled: bool = True
    start: str = DEFAULT_WORKING_HOURS_START
    end: str = DEFAULT_WORKING_HOURS_END

    @classmethod
    def from_dict(cls, payload: Any) -> "DaySchedule":
        if not isinstance(payload, dict):
            return cls()
        return cls(
            enabled=bool(payload.get("enabled", True)),
            start=str(payload.get("start") or DEFAULT_WORKING_HOURS_START),
            end=str(payload.get("end") or DEFAULT_WORKING_HOURS_END),
        )


SETTINGS_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class AppointmentSettings:
    """Configuración de agenda: un único registro por propietario.

    Se fusiona campo a campo (nunca por sustitución completa) porque llega de
    tres fuentes que se solapan: la fila remota, el objeto local previo y el
    update pendiente en la cola.
    """

    version: int = SETTINGS_SCHEMA_VERSION
    working_hours: WorkingHours = field(default_factory=WorkingHours)
    working_days: tuple[str, ...] = DEFAULT_WORKING_DAYS
    slot_duration: int = 30
    buffer_time: int = 5
    holidays: tuple[str, ...] = ()
    breaks: BreakTime = field(default_factory=BreakTime)
    schedule: dict[str, DaySchedule] = field(default_factory=dict)

    @classmethod
    def from_ui_dict(cls, payload: dict[str, Any] | None) -> "AppointmentSettings":
        if not payload or not isinstance(payload, dict):
            return cls()
        defaults = cls()
        hours = _dict_or_empty(payload.get("workingHours"))
        breaks = _dict_or_empty(payload.get("breaks"))
        schedule = _dict_or_empty(payload.get("schedule"))
        return cls(
            version=_int_or_default(payload.get("version"), SETTINGS_SCHEMA_VERSION) or SETTINGS_SCHEMA_VERSION,
            working_hours=WorkingHours(
                start=str(hours.get("start") or defaults.working_hours.start),
                end=str(hours.get("end") or defaults.working_hours.end),
            ),
            working_days=_str_tuple(payload.get("workingDays")) or defaults.working_days,
            slot_duration=_int_or_default(payload.get("slotDuration"), defaults.slot_duration) or defaults.slot_duration,
            buffer_time=_int_or_default(payload.get("bufferTime"), defaults.buffer_time),
            holidays=_str_tuple(payload.get("holidays")),
            breaks=BreakTime(
                start=str(breaks.get("start") or defaults.breaks.start),
                end=str(breaks.get("end") or defaults.breaks.end),
                enabled=bool(breaks.get("enabled", defaults.breaks.enabled)),
            ),
            schedule={
                str(day): DaySchedule.from_dict(value)
                for day, value in schedule.items()
                if str(day) in WEEK_DAYS
            },
        )

    def to_ui_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "workingHours": asdict(self.working_hours),
            "workingDays": list(self.working_days),
            "slotDuration": self.slot_duration,
            "bufferTime": self.buffer_time,
            "holidays": list(self.holidays),
            "breaks": asdict(self.breaks),
            "schedule": {day: asdict(value) for day, value in self.schedule.items()},
        }

    @classmethod
    def from_storage_row(cls, row: dict[str, Any] | None) -> "AppointmentSettings":
        return cls.from_ui_dict(settings_row_to_ui(row))

    def to_storage_row(self, owner_id: str) -> dict[str, Any]:
        return {
            "user_id": owner_id,
            "working_hours_start": self.working_hours.start,
            "working_hours_end": self.working_hours.end,
            "working_days": list(self.working_days),
            "slot_duration": self.slot_duration,
            "buffer_time": self.buffer_time,
            "holidays": list(self.holidays),
            "breaks": {
                **asdict(self.breaks),
                "schedule": {day: asdict(value) for day, value in self.schedule.items()},
            },
        }


def settings_row_to_ui(row: dict[str, Any] | None) -> dict[str, Any]:
    """Convierte una fila ``appointment_settings`` a la forma de UI.

    Solo se emiten las claves presentes en la fila para que la fusión por
    campos no pise valores locales con huecos remotos.
    """
    if not row:
        return {}
    ui: dict[str, Any] = {}
    if "working_hours_start" in row or "working_hours_end" in row:
        hours: dict[str, Any] = {}
        if row.get("working_hours_start"):
            hours["start"] = row["working_hours_start"]
        if row.get("working_hours_end"):
            hours["end"] = row["working_hours_end"]
        ui["workingHours"] = hours
    for storage_key, ui_key in (
        ("working_days", "workingDays"),
        ("slot_duration", "slotDuration"),
        ("buffer_time", "bufferTime"),
        ("holidays", "holidays"),
    ):
        if row.get(storage_key) is not None:
            ui[ui_key] = row[storage_key]
    breaks = row.get("breaks")
    if isinstance(breaks, dict):
        ui["breaks"] = {key: value for key, value in breaks.items() if key != "schedule"}
        if isinstance(breaks.get("schedule"), dict):
            ui["schedule"] = breaks["schedule"]
    return ui


def _int_or_default(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _dict_or_empty(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str_tuple(value: Any) -> tuple[str, ...]:
    # Una caché con forma inesperada ("Mon,Tue", 3) se trata como ausente.
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(item) for item in value)
