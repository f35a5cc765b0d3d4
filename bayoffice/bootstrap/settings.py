from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Mapping

from bayoffice.infrastructure.local_config import APP_DIR_NAME, resolve_appdata_dir

LOG_DIR_ENV = "BAY_LOG_DIR"


def _log_dir_candidates(environ: Mapping[str, str]) -> list[Path]:
    candidates: list[Path] = []
    env_dir = environ.get(LOG_DIR_ENV)
    if env_dir:
        candidates.append(Path(env_dir).expanduser())
    # Los logs viven junto a config.json y la caché SQLite del usuario.
    candidates.append(resolve_appdata_dir() / "logs")
    candidates.append(Path(tempfile.gettempdir()) / APP_DIR_NAME / "logs")
    return candidates


def _is_writable(candidate: Path) -> bool:
    try:
        candidate.mkdir(parents=True, exist_ok=True)
        marker = candidate / "_write_test.tmp"
        marker.write_text("ok", encoding="utf-8")
        marker.unlink(missing_ok=True)
    except OSError:
        return False
    return True


def resolve_log_dir(environ: Mapping[str, str] | None = None) -> Path:
    """Primer directorio de logs escribible: ``BAY_LOG_DIR``, datos de usuario, temporal."""
    candidates = _log_dir_candidates(os.environ if environ is None else environ)
    for candidate in candidates:
        if _is_writable(candidate):
            return candidate
    return Path.cwd()
