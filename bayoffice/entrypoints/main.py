from __future__ import annotations

import argparse
import faulthandler
import json
import logging
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Callable

from bayoffice.bootstrap.container import AppContainer, build_container
from bayoffice.bootstrap.logging import configure_logging, install_exception_hook
from bayoffice.bootstrap.settings import resolve_log_dir
from bayoffice.core.metrics import metrics_registry
from bayoffice.infrastructure.local_config import AppConfigStore
from bayoffice.infrastructure.migrations import DEFAULT_MIGRATIONS_DIR

ContainerFactory = Callable[[], AppContainer]


def _run_selfcheck(log_dir: Path) -> int:
    logger = logging.getLogger(__name__)
    errors = 0

    migrations_dir = DEFAULT_MIGRATIONS_DIR
    up_files = sorted(migrations_dir.glob("*.up.sql"))
    if not up_files:
        logger.error("No hay migraciones en %s", migrations_dir)
        errors += 1
    for path in up_files:
        try:
            _ = path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.exception("No se pudo leer la migración %s: %s", path, exc)
            errors += 1

    config = AppConfigStore().load()
    logger.info(
        "Configuración cargada: supabase=%s email=%s",
        config.is_supabase_configured,
        config.is_email_configured,
    )

    if errors:
        logger.error("Selfcheck fallo con %s error(es). crash.log=%s", errors, log_dir / "crash.log")
        return 1
    logger.info("Selfcheck OK.")
    return 0


def _write_json(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")


def _run_status(container: AppContainer) -> int:
    status = container.queue.get_status()
    by_table = Counter(item.table for item in container.queue.queue)
    _write_json(
        {
            "pending_count": status.pending_count,
            "is_processing": status.is_processing,
            "last_sync_attempt": status.last_sync_attempt,
            "last_error": status.last_error,
            "pending_by_table": dict(by_table),
            "supabase_configured": container.config.is_supabase_configured,
        }
    )
    return 0


def _run_drain(container: AppContainer) -> int:
    logger = logging.getLogger(__name__)
    if container.remote is None:
        logger.warning("Drenado cancelado: Supabase no está configurado")
        sys.stderr.write("Supabase no está configurado; la cola se conserva.\n")
        return 2
    report = container.queue.drain(container.remote)
    _write_json(
        {
            "applied": report.applied,
            "failed": report.failed,
            "dropped": report.dropped,
            "remaining": report.remaining,
            "skipped": report.skipped,
            "errors": report.errors,
            "metrics": metrics_registry.snapshot()["counters"],
        }
    )
    logger.info("Drenado finalizado", extra={"extra": {"applied": report.applied, "failed": report.failed}})
    return 0 if report.failed == 0 else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="BayOffice: cola de sincronización offline")
    parser.add_argument("--selfcheck", action="store_true", help="Valida recursos y configuración")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("status", help="Muestra el estado de la cola pendiente")
    subparsers.add_parser("drain", help="Reproduce la cola pendiente contra Supabase")
    return parser


def main(argv: list[str] | None = None, *, container_factory: ContainerFactory = build_container) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    log_dir = resolve_log_dir()
    configure_logging(log_dir)
    install_exception_hook(log_dir)
    faulthandler.enable()

    logger = logging.getLogger(__name__)
    logger.info("Log dir: %s", log_dir)
    logger.info("Python: %s", sys.version)

    if args.selfcheck:
        return _run_selfcheck(log_dir)
    if args.command is None:
        parser.print_help()
        return 0

    container = container_factory()
    if args.command == "drain":
        return _run_drain(container)
    return _run_status(container)
