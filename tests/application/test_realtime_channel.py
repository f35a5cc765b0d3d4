from __future__ import annotations

import threading

from bayoffice.application.realtime import RealtimeChannel, RealtimeConsumer
from bayoffice.domain.models import RealtimeEvent


def _event(record_id: str, action: str = "insert") -> RealtimeEvent:
    return RealtimeEvent(table="services", action=action, record={"id": record_id})


def test_consumer_aplica_eventos_en_orden_de_entrega() -> None:
    channel = RealtimeChannel(maxsize=10)
    applied: list[str] = []
    consumer = RealtimeConsumer(channel, lambda event: applied.append(event.record_id), lambda: None)

    for record_id in ("a", "b", "c"):
        channel.publish(_event(record_id))

    assert consumer.process_pending() == 3
    assert applied == ["a", "b", "c"]
    assert len(channel) == 0


def test_canal_lleno_marca_resincronizacion() -> None:
    channel = RealtimeChannel(maxsize=1, put_timeout=0.01)
    resyncs: list[bool] = []
    consumer = RealtimeConsumer(channel, lambda event: None, lambda: resyncs.append(True))

    assert channel.publish(_event("a")) is True
    assert channel.publish(_event("b")) is False
    assert channel.needs_resync is True

    consumer.process_pending()

    assert resyncs == [True]
    assert channel.needs_resync is False


def test_error_al_aplicar_un_evento_no_detiene_el_consumidor() -> None:
    channel = RealtimeChannel()
    applied: list[str] = []

    def _apply(event: RealtimeEvent) -> None:
        if event.record_id == "roto":
            raise ValueError("payload inesperado")
        applied.append(event.record_id)

    consumer = RealtimeConsumer(channel, _apply, lambda: None)
    channel.publish(_event("roto"))
    channel.publish(_event("ok"))

    assert consumer.process_pending() == 2
    assert applied == ["ok"]


def test_hilo_consumidor_procesa_y_se_detiene() -> None:
    channel = RealtimeChannel()
    done = threading.Event()
    consumer = RealtimeConsumer(channel, lambda event: done.set(), lambda: None, poll_timeout=0.05)

    consumer.start()
    channel.publish(_event("a"))

    assert done.wait(timeout=5)
    consumer.stop()
    assert consumer.is_running is False


def test_discard_pending_vacia_el_canal_y_la_marca_de_resync() -> None:
    channel = RealtimeChannel(maxsize=2, put_timeout=0.01)
    for record_id in ("a", "b", "c"):
        channel.publish(_event(record_id))
    assert channel.needs_resync is True

    assert channel.discard_pending() == 2

    assert len(channel) == 0
    assert channel.needs_resync is False
