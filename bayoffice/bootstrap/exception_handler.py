from __future__ import annotations

import json
import logging
import traceback
import uuid
from dataclasses import asdict, dataclass
from types import TracebackType

from bayoffice.bootstrap.logging import CRASH_LOG_NAME
from bayoffice.bootstrap.settings import resolve_log_dir
from bayoffice.core.metrics import metrics_registry
from bayoffice.core.observability import generate_correlation_id, get_correlation_id, get_owner_id, set_correlation_id


@dataclass(frozen=True)
class IncidentReport:
    """Datos de un fallo no controlado del CLI que se registran y se muestran al usuario."""

    incident_id: str
    correlation_id: str
    owner_id: str | None
    error_type: str
    error_message: str
    sync_counters: dict[str, int]

    def to_payload(self) -> dict[str, object]:
        return asdict(self)


def generar_id_incidente() -> str:
    return f"INC-{uuid.uuid4().hex[:12].upper()}"


def _asegurar_correlation_id() -> str:
    correlation_id = get_correlation_id()
    if correlation_id:
        return correlation_id
    correlation_id = generate_correlation_id()
    set_correlation_id(correlation_id)
    return correlation_id


def _sync_counters() -> dict[str, int]:
    # Estado de la sincronización en el momento del fallo (encoladas, sincronizadas, descartadas).
    counters = metrics_registry.snapshot()["counters"]
    return {name: value for name, value in counters.items() if name.startswith("mutaciones_")}


def build_incident_report(exc_type: type[BaseException], exc_value: BaseException) -> IncidentReport:
    return IncidentReport(
        incident_id=generar_id_incidente(),
        correlation_id=_asegurar_correlation_id(),
        owner_id=get_owner_id(),
        error_type=exc_type.__name__,
        error_message=str(exc_value),
        sync_counters=_sync_counters(),
    )


def _escribir_fallback_crash_log(report: IncidentReport, stacktrace: str) -> None:
    log_dir = resolve_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    payload = {**report.to_payload(), "stacktrace": stacktrace}
    with (log_dir / CRASH_LOG_NAME).open("a", encoding="utf-8") as handler:
        handler.write(json.dumps(payload, ensure_ascii=False) + "\n")


def manejar_excepcion_global(
    exc_type: type[BaseException], exc_value: BaseException, exc_traceback: TracebackType
) -> str:
    """Registra una excepción no controlada del CLI y devuelve su id de incidente.

    Si el propio logging falla, el informe se escribe directamente en ``crash.log``.
    """
    report = build_incident_report(exc_type, exc_value)
    logger = logging.getLogger("bayoffice.global_exception")
    try:
        logger.critical(
            "Excepción no controlada. incident_id=%s",
            report.incident_id,
            exc_info=(exc_type, exc_value, exc_traceback),
            extra={"correlation_id": report.correlation_id, "extra": report.to_payload()},
        )
    except Exception:  # noqa: BLE001
        stacktrace = "".join(traceback.format_exception(exc_type, exc_value, exc_traceback))
        _escribir_fallback_crash_log(report, stacktrace)
    return report.incident_id
