from __future__ import annotations

import logging
import uuid
from contextlib import AbstractContextManager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from time import perf_counter
from typing import Any

_CORRELATION_ID: ContextVar[str | None] = ContextVar("correlation_id", default=None)
_OWNER_ID: ContextVar[str | None] = ContextVar("owner_id", default=None)

logger = logging.getLogger(__name__)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> str | None:
    return _CORRELATION_ID.get()


def get_owner_id() -> str | None:
    return _OWNER_ID.get()


def set_correlation_id(correlation_id: str | None) -> Token[str | None]:
    return _CORRELATION_ID.set(correlation_id)


def reset_correlation_id(token: Token[str | None]) -> None:
    _CORRELATION_ID.reset(token)


class OperationContext(AbstractContextManager["OperationContext"]):
    """Agrupa bajo un mismo correlation_id los logs de una reconciliación o un drenado."""

    def __init__(self, operation_name: str, *, owner_id: str | None = None) -> None:
        self.operation_name = operation_name
        self.owner_id = owner_id
        self.correlation_id = generate_correlation_id()
        self.duration_ms: float = 0.0
        self._started = 0.0
        self._correlation_token: Token[str | None] | None = None
        self._owner_token: Token[str | None] | None = None

    def __enter__(self) -> "OperationContext":
        self._correlation_token = set_correlation_id(self.correlation_id)
        self._owner_token = _OWNER_ID.set(self.owner_id)
        self._started = perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, exc_tb: object) -> None:
        self.duration_ms = (perf_counter() - self._started) * 1000
        logger.debug(
            "operation_finished name=%s duration_ms=%.1f failed=%s",
            self.operation_name,
            self.duration_ms,
            exc_type is not None,
        )
        if self._owner_token is not None:
            _OWNER_ID.reset(self._owner_token)
        if self._correlation_token is not None:
            reset_correlation_id(self._correlation_token)
        return None


def log_event(logger: Any, event_name: str, payload: dict[str, Any], correlation_id: str | None = None) -> dict[str, Any]:
    resolved_id = correlation_id or get_correlation_id()
    event = {
        "event": event_name,
        "correlation_id": resolved_id,
        "owner_id": get_owner_id(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }
    logger.info(event_name, extra={"correlation_id": resolved_id, "extra": event})
    return event
