from __future__ import annotations

import logging
from typing import Any

from bayoffice.core.observability import get_correlation_id, get_owner_id

operational_logger = logging.getLogger("bayoffice.operational_error")


def log_operational_error(
    message: str,
    *,
    exc: BaseException | None = None,
    extra: dict[str, Any] | None = None,
) -> None:
    """Registra un fallo recuperado en el borde de E/S sin propagarlo."""
    metadata = dict(extra or {})
    correlation_id = metadata.get("correlation_id") or get_correlation_id()
    if correlation_id:
        metadata["correlation_id"] = correlation_id
    owner_id = get_owner_id()
    if owner_id and "owner_id" not in metadata:
        metadata["owner_id"] = owner_id
    exc_info: Any = False
    if exc is not None:
        exc_info = (type(exc), exc, exc.__traceback__)
    operational_logger.error(
        message,
        exc_info=exc_info,
        extra={"correlation_id": correlation_id, "extra": metadata},
    )
