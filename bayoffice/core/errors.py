from __future__ import annotations


class AppError(Exception):
    pass


class InfraError(AppError):
    pass


class PersistenceError(InfraError):
    pass


class ExternalServiceError(InfraError):
    pass


class RemoteStoreError(ExternalServiceError):
    """Fallo de lectura o escritura contra el backend remoto."""

    def __init__(self, message: str, *, table: str | None = None, operation: str | None = None) -> None:
        super().__init__(message)
        self.table = table
        self.operation = operation
