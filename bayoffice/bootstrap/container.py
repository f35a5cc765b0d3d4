from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Callable, Optional

from bayoffice.application.appointment_context import AppointmentContext
from bayoffice.application.mutation_queue import MutationQueue
from bayoffice.domain.models import OwnerIdentity
from bayoffice.domain.ports import KeyValueStorePort, NotificationDispatcherPort, RemoteStorePort
from bayoffice.infrastructure.db import get_connection
from bayoffice.infrastructure.kv_store_sqlite import SQLiteKeyValueStore
from bayoffice.infrastructure.local_cache import LocalCacheStore
from bayoffice.infrastructure.local_config import AppConfig, AppConfigStore
from bayoffice.infrastructure.migrations import run_migrations
from bayoffice.infrastructure.notifications import LoggingNotificationDispatcher, ResendNotificationDispatcher
from bayoffice.infrastructure.supabase_remote import SupabaseRemoteStore, build_supabase_client

logger = logging.getLogger(__name__)


@dataclass
class AppContainer:
    config: AppConfig
    store: KeyValueStorePort
    cache: LocalCacheStore
    queue: MutationQueue
    remote: RemoteStorePort | None
    notifier: NotificationDispatcherPort

    def create_context(self, owner_id: str | None, identity: OwnerIdentity | None) -> AppointmentContext:
        # Las sesiones demo nunca envían avisos reales.
        notifier = self.notifier
        if identity is not None and not identity.is_cloud:
            notifier = LoggingNotificationDispatcher()
        return AppointmentContext(
            owner_id,
            identity,
            cache=self.cache,
            queue=self.queue,
            remote=self.remote,
            notifier=notifier,
        )


ConnectionFactory = Callable[[], sqlite3.Connection]
RemoteFactory = Callable[[AppConfig], Optional[RemoteStorePort]]


def build_remote(config: AppConfig) -> RemoteStorePort | None:
    if not config.is_supabase_configured:
        logger.info("Supabase sin configurar: modo solo local")
        return None
    client = build_supabase_client(config)
    return SupabaseRemoteStore(client, poll_interval_seconds=config.poll_interval_seconds)


def build_notifier(config: AppConfig) -> NotificationDispatcherPort:
    if config.is_email_configured:
        return ResendNotificationDispatcher(config.resend_api_key, config.notification_sender)
    return LoggingNotificationDispatcher()


def build_container(
    connection_factory: ConnectionFactory = get_connection,
    *,
    config_store: AppConfigStore | None = None,
    remote_factory: RemoteFactory = build_remote,
) -> AppContainer:
    connection = connection_factory()
    run_migrations(connection)
    store = SQLiteKeyValueStore(connection)
    config = (config_store or AppConfigStore()).load()

    return AppContainer(
        config=config,
        store=store,
        cache=LocalCacheStore(store),
        queue=MutationQueue(store),
        remote=remote_factory(config),
        notifier=build_notifier(config),
    )
