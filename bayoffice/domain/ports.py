from __future__ import annotations

from typing import Callable, Protocol

from bayoffice.domain.models import RealtimeEvent, Record, TableName


class KeyValueStorePort(Protocol):
    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class SubscriptionPort(Protocol):
    def unsubscribe(self) -> None:
        ...


RealtimeCallback = Callable[[RealtimeEvent], None]


class RemoteStorePort(Protocol):
    def select_by_owner(self, table: TableName, owner_id: str) -> list[Record]:
        ...

    def insert(self, table: TableName, record: Record) -> Record:
        ...

    def update(self, table: TableName, record_id: str, data: Record) -> None:
        ...

    def upsert(self, table: TableName, record: Record, on_conflict: str = "id") -> None:
        ...

    def delete(self, table: TableName, record_id: str) -> None:
        ...

    def subscribe(self, owner_id: str, on_event: RealtimeCallback) -> SubscriptionPort:
        ...


class NotificationDispatcherPort(Protocol):
    def dispatch(self, contact_address: str, message: str) -> None:
        ...
