from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

APP_DIR_NAME = "BayOffice"
PLACEHOLDER_SUPABASE_URL = "https://YOUR_PROJECT_ID.supabase.co"
PLACEHOLDER_SUPABASE_KEY = "YOUR_SUPABASE_ANON_KEY_HERE"
DEFAULT_POLL_INTERVAL_SECONDS = 15.0
DEFAULT_NOTIFICATION_SENDER = "notifications@bayoffice.app"

ENV_OVERRIDES = {
    "supabase_url": "BAY_SUPABASE_URL",
    "supabase_anon_key": "BAY_SUPABASE_ANON_KEY",
    "resend_api_key": "BAY_RESEND_API_KEY",
    "notification_sender": "BAY_NOTIFICATION_SENDER",
    "poll_interval_seconds": "BAY_POLL_INTERVAL_SECONDS",
}


def resolve_appdata_dir() -> Path:
    env_dir = os.environ.get("LOCALAPPDATA")
    if env_dir:
        base_dir = Path(env_dir)
    else:
        base_dir = Path.home() / ".local" / "share"
    return base_dir / APP_DIR_NAME


@dataclass(frozen=True)
class AppConfig:
    supabase_url: str = ""
    supabase_anon_key: str = ""
    resend_api_key: str = ""
    notification_sender: str = DEFAULT_NOTIFICATION_SENDER
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    device_id: str = ""

    @property
    def is_supabase_configured(self) -> bool:
        return bool(
            self.supabase_url
            and self.supabase_anon_key
            and self.supabase_url != PLACEHOLDER_SUPABASE_URL
            and self.supabase_anon_key != PLACEHOLDER_SUPABASE_KEY
        )

    @property
    def is_email_configured(self) -> bool:
        return bool(self.resend_api_key)


class AppConfigStore:
    def __init__(self, base_dir: Path | None = None, environ: dict[str, str] | None = None) -> None:
        self._base_dir = base_dir or resolve_appdata_dir()
        self._config_path = self._base_dir / "config.json"
        self._environ = environ if environ is not None else os.environ

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> AppConfig:
        """Lee ``config.json`` y aplica los overrides de entorno.

        Sin fichero, o con un fichero ilegible, se devuelve la configuración por
        defecto: la app funciona en modo local sin backend.
        """
        payload = self._read_payload()
        device_id = str(payload.get("device_id", "")).strip()
        if payload and not device_id:
            device_id = self._generate_device_id()
            payload["device_id"] = device_id
            self._write_payload(payload)
        config = AppConfig(
            supabase_url=str(payload.get("supabase_url", "")).strip(),
            supabase_anon_key=str(payload.get("supabase_anon_key", "")).strip(),
            resend_api_key=str(payload.get("resend_api_key", "")).strip(),
            notification_sender=str(payload.get("notification_sender") or DEFAULT_NOTIFICATION_SENDER).strip(),
            poll_interval_seconds=_float_or_default(payload.get("poll_interval_seconds"), DEFAULT_POLL_INTERVAL_SECONDS),
            device_id=device_id,
        )
        return self._apply_env_overrides(config)

    def save(self, config: AppConfig) -> AppConfig:
        payload = {
            "supabase_url": config.supabase_url,
            "supabase_anon_key": config.supabase_anon_key,
            "resend_api_key": config.resend_api_key,
            "notification_sender": config.notification_sender,
            "poll_interval_seconds": config.poll_interval_seconds,
            "device_id": config.device_id or self._generate_device_id(),
        }
        self._write_payload(payload)
        return replace(config, device_id=payload["device_id"])

    def _apply_env_overrides(self, config: AppConfig) -> AppConfig:
        overrides: dict[str, Any] = {}
        for field_name, env_name in ENV_OVERRIDES.items():
            raw = self._environ.get(env_name)
            if raw is None or not raw.strip():
                continue
            if field_name == "poll_interval_seconds":
                overrides[field_name] = _float_or_default(raw, config.poll_interval_seconds)
            else:
                overrides[field_name] = raw.strip()
        return replace(config, **overrides) if overrides else config

    def _read_payload(self) -> dict[str, Any]:
        if not self._config_path.exists():
            return {}
        try:
            payload = json.loads(self._config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.exception("No se pudo leer config.json: %s", exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _write_payload(self, payload: dict[str, Any]) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        self._config_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    @staticmethod
    def _generate_device_id() -> str:
        return str(uuid.uuid4())


def _float_or_default(value: Any, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default
