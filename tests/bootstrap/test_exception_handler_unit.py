from __future__ import annotations

import json
import logging
import sys
from types import SimpleNamespace

from bayoffice.bootstrap import exception_handler
from bayoffice.core.metrics import metrics_registry
from bayoffice.core.observability import OperationContext, reset_correlation_id, set_correlation_id


class _LoggerRoto:
    def critical(self, *args, **kwargs) -> None:  # noqa: ANN002, ANN003
        raise RuntimeError("logging roto")


def _exc_info():
    try:
        raise ValueError("fallo inesperado")
    except ValueError:
        return sys.exc_info()


def test_manejar_excepcion_global_registra_incidente(monkeypatch, caplog) -> None:
    monkeypatch.setattr(exception_handler, "generar_id_incidente", lambda: "INC-FIJO")
    metrics_registry.incrementar("mutaciones_encoladas", 2, etiqueta="staff.delete")
    metrics_registry.incrementar("eventos_realtime_aplicados")
    token = set_correlation_id("cid-existente")

    try:
        with caplog.at_level(logging.CRITICAL, logger="bayoffice.global_exception"):
            with OperationContext("drain_queue", owner_id="o1"):
                incident_id = exception_handler.manejar_excepcion_global(*_exc_info())
    finally:
        reset_correlation_id(token)

    assert incident_id == "INC-FIJO"
    record = caplog.records[-1]
    assert record.exc_info[0] is ValueError
    assert record.extra["incident_id"] == "INC-FIJO"
    assert record.extra["owner_id"] == "o1"
    assert record.extra["error_type"] == "ValueError"
    assert record.extra["sync_counters"] == {"mutaciones_encoladas[staff.delete]": 2}


def test_fallback_escribe_crash_log_si_el_logging_falla(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(exception_handler, "logging", SimpleNamespace(getLogger=lambda _name: _LoggerRoto()))
    monkeypatch.setattr(exception_handler, "resolve_log_dir", lambda: tmp_path)
    monkeypatch.setattr(exception_handler, "generar_id_incidente", lambda: "INC-FALLBACK")
    monkeypatch.setattr(exception_handler, "_asegurar_correlation_id", lambda: "corr-001")

    incident_id = exception_handler.manejar_excepcion_global(*_exc_info())

    payload = json.loads((tmp_path / "crash.log").read_text(encoding="utf-8").strip())
    assert incident_id == "INC-FALLBACK"
    assert payload["incident_id"] == "INC-FALLBACK"
    assert payload["correlation_id"] == "corr-001"
    assert payload["owner_id"] is None
    assert payload["error_type"] == "ValueError"
    assert "fallo inesperado" in payload["stacktrace"]


def test_generar_id_incidente_tiene_prefijo() -> None:
    incident_id = exception_handler.generar_id_incidente()

    assert incident_id.startswith("INC-")
    assert len(incident_id) == 16
