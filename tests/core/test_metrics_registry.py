from __future__ import annotations

from time import sleep

from bayoffice.core import metrics


def test_incrementar_contador_con_etiqueta() -> None:
    registry = metrics.MetricsRegistry()

    registry.incrementar("mutaciones_encoladas", etiqueta="services.insert")
    registry.incrementar("mutaciones_encoladas", 2, etiqueta="services.insert")
    registry.incrementar("mutaciones_encoladas")

    assert registry.contador("mutaciones_encoladas", "services.insert") == 3
    assert registry.contador("mutaciones_encoladas") == 1
    assert registry.snapshot()["counters"]["mutaciones_encoladas[services.insert]"] == 3


def test_registrar_latencia_y_reiniciar() -> None:
    registry = metrics.MetricsRegistry()
    registry.registrar_tiempo("latency.drain_ms", 10)
    registry.registrar_tiempo("latency.drain_ms", 30)

    timing = registry.snapshot()["timings_ms"]["latency.drain_ms"]

    assert timing == {"count": 2, "last": 30, "avg": 20.0, "max": 30}
    registry.reiniciar()
    assert registry.snapshot() == {"counters": {}, "timings_ms": {}}


def test_decorator_mide_tiempo_real() -> None:
    original_registry = metrics.metrics_registry
    metrics.metrics_registry = metrics.MetricsRegistry()

    @metrics.medir_tiempo("latency.decorator_ms")
    def _operacion() -> str:
        sleep(0.01)
        return "ok"

    try:
        result = _operacion()
        measured = metrics.metrics_registry.snapshot()["timings_ms"]["latency.decorator_ms"]["last"]
    finally:
        metrics.metrics_registry = original_registry

    assert result == "ok"
    assert measured > 0
