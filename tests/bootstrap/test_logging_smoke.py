from __future__ import annotations

import json
import logging
import sys

import pytest

from bayoffice.bootstrap.logging import (
    CRASH_LOG_NAME,
    ERROR_OPERATIVO_LOG_NAME,
    MAIN_LOG_NAME,
    configure_logging,
    install_exception_hook,
)
from bayoffice.core.observability import OperationContext


@pytest.fixture(autouse=True)
def _restore_root_handlers():
    root_logger = logging.getLogger()
    original_handlers = list(root_logger.handlers)
    original_level = root_logger.level
    yield
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


def _last_event(path) -> dict:
    return json.loads(path.read_text(encoding="utf-8").strip().splitlines()[-1])


def test_configure_logging_writes_jsonl_log_file(tmp_path) -> None:
    configure_logging(tmp_path)

    logging.getLogger("tests.logging_smoke").info("smoke log message")

    event = _last_event(tmp_path / MAIN_LOG_NAME)
    assert event["mensaje"] == "smoke log message"
    assert event["level"] == "INFO"
    assert event["logger"] == "tests.logging_smoke"


def test_error_operativo_solo_recibe_errores_con_contexto(tmp_path) -> None:
    configure_logging(tmp_path)
    logger = logging.getLogger("tests.logging_smoke")

    with OperationContext("reconcile", owner_id="o1") as operation:
        logger.warning("aviso que no es error")
        logger.error("lectura remota fallida", extra={"extra": {"table": "staff"}})

    lines = (tmp_path / ERROR_OPERATIVO_LOG_NAME).read_text(encoding="utf-8").strip().splitlines()
    assert len(lines) == 1
    event = json.loads(lines[0])
    assert event["correlation_id"] == operation.correlation_id
    assert event["owner_id"] == "o1"
    assert event["extra"] == {"table": "staff"}
    assert not (tmp_path / CRASH_LOG_NAME).read_text(encoding="utf-8").strip()


def test_install_exception_hook_writes_crash_log(tmp_path) -> None:
    original_hook = sys.excepthook
    configure_logging(tmp_path)
    install_exception_hook(tmp_path)

    try:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            exc_type, exc, tb = sys.exc_info()
            assert exc_type is not None and exc is not None and tb is not None
            sys.excepthook(exc_type, exc, tb)

        crash_event = _last_event(tmp_path / CRASH_LOG_NAME)
        assert crash_event["level"] == "CRITICAL"
        assert "RuntimeError: boom" in crash_event["exc_info"]
    finally:
        sys.excepthook = original_hook
