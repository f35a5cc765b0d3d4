from __future__ import annotations

from pathlib import Path

from bayoffice.bootstrap.container import build_container, build_notifier
from bayoffice.domain.models import OwnerIdentity
from bayoffice.infrastructure.db import get_connection
from bayoffice.infrastructure.local_config import AppConfig, AppConfigStore
from bayoffice.infrastructure.notifications import LoggingNotificationDispatcher, ResendNotificationDispatcher


def test_build_container_smoke_sin_supabase(tmp_path: Path) -> None:
    db_path = tmp_path / "smoke.db"

    container = build_container(
        connection_factory=lambda: get_connection(db_path),
        config_store=AppConfigStore(base_dir=tmp_path, environ={}),
    )

    assert container.remote is None
    assert isinstance(container.notifier, LoggingNotificationDispatcher)
    assert container.queue.get_status().pending_count == 0

    context = container.create_context("o1", OwnerIdentity(id="o1"))
    try:
        context.add_service({"name": "Corte", "duration": 30, "price": 20})
        assert container.queue.get_status().pending_count == 1
        assert container.cache.load_collection("services", "o1")[0]["name"] == "Corte"
    finally:
        context.close()


def test_build_container_usa_la_factoria_remota(tmp_path: Path, fake_remote) -> None:
    seen: list[AppConfig] = []

    def _remote_factory(config: AppConfig):
        seen.append(config)
        return fake_remote

    container = build_container(
        connection_factory=lambda: get_connection(tmp_path / "remote.db"),
        config_store=AppConfigStore(base_dir=tmp_path, environ={}),
        remote_factory=_remote_factory,
    )

    assert container.remote is fake_remote
    assert seen == [container.config]


def test_sesion_demo_nunca_usa_el_notificador_real(tmp_path: Path, fake_notifier) -> None:
    container = build_container(
        connection_factory=lambda: get_connection(tmp_path / "demo.db"),
        config_store=AppConfigStore(base_dir=tmp_path, environ={}),
    )
    container.notifier = fake_notifier

    context = container.create_context(None, OwnerIdentity(id="demo", session_kind="mock"))
    try:
        assert context._notifier is not fake_notifier
    finally:
        context.close()


def test_build_notifier_con_resend_configurado() -> None:
    config = AppConfig(resend_api_key="re_123", notification_sender="citas@bayoffice.app")

    assert isinstance(build_notifier(config), ResendNotificationDispatcher)
