from __future__ import annotations

import logging
import queue
import threading
from typing import Callable

from bayoffice.core.metrics import metrics_registry
from bayoffice.core.operational_logging import log_operational_error
from bayoffice.domain.models import RealtimeEvent

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_SIZE = 256


class RealtimeChannel:
    """Canal acotado entre la suscripción remota y el consumidor único.

    Si el canal se llena no se pierde un evento en silencio: se marca
    ``needs_resync`` y el consumidor lanza una reconciliación completa.
    """

    def __init__(self, maxsize: int = DEFAULT_CHANNEL_SIZE, *, put_timeout: float = 1.0) -> None:
        self._queue: queue.Queue[RealtimeEvent] = queue.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._resync = threading.Event()

    @property
    def needs_resync(self) -> bool:
        return self._resync.is_set()

    def publish(self, event: RealtimeEvent) -> bool:
        try:
            self._queue.put(event, timeout=self._put_timeout)
        except queue.Full:
            self._resync.set()
            metrics_registry.incrementar("eventos_realtime_desbordados", etiqueta=event.table)
            logger.warning("realtime_channel_full table=%s action=%s", event.table, event.action)
            return False
        return True

    def get(self, timeout: float | None = None) -> RealtimeEvent | None:
        try:
            return self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            return None

    def discard_pending(self) -> int:
        """Vacía el canal sin aplicar nada; devuelve cuántos eventos se descartan."""
        discarded = 0
        while self.get() is not None:
            discarded += 1
        self.clear_resync()
        return discarded

    def clear_resync(self) -> bool:
        was_set = self._resync.is_set()
        self._resync.clear()
        return was_set

    def __len__(self) -> int:
        return self._queue.qsize()


class RealtimeConsumer:
    """Hilo consumidor único: aplica los eventos en orden de entrega."""

    def __init__(
        self,
        channel: RealtimeChannel,
        apply_event: Callable[[RealtimeEvent], None],
        on_resync: Callable[[], None],
        *,
        poll_timeout: float = 0.5,
    ) -> None:
        self._channel = channel
        self._apply_event = apply_event
        self._on_resync = on_resync
        self._poll_timeout = poll_timeout
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="realtime-consumer", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def process_pending(self) -> int:
        """Aplica de forma síncrona todo lo encolado; devuelve cuántos eventos."""
        processed = 0
        while True:
            event = self._channel.get()
            if event is None:
                break
            self._handle(event)
            processed += 1
        self._check_resync()
        return processed

    def _run(self) -> None:
        while not self._stop.is_set():
            event = self._channel.get(timeout=self._poll_timeout)
            if event is not None:
                self._handle(event)
            self._check_resync()

    def _handle(self, event: RealtimeEvent) -> None:
        try:
            self._apply_event(event)
        except Exception as exc:  # noqa: BLE001
            log_operational_error(
                "No se pudo aplicar un evento realtime",
                exc=exc,
                extra={"table": event.table, "action": event.action, "record_id": event.record_id},
            )

    def _check_resync(self) -> None:
        if not self._channel.clear_resync():
            return
        logger.info("realtime_resync_requested")
        try:
            self._on_resync()
        except Exception as exc:  # noqa: BLE001
            log_operational_error("Falló la resincronización tras desbordar el canal realtime", exc=exc)
