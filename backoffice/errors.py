from __future__ import annotations

from typing import Any


class BackofficeError(Exception):
    pass


class ValidationError(BackofficeError):
    def __init__(self, field: str, message: str = "") -> None:
        self.field = field
        super().__init__(message or f"{field} is required")


class NotFound(BackofficeError):
    def __init__(self, entity: str, ident: Any) -> None:
        self.entity = entity
        self.ident = ident
        super().__init__(f"{entity} not found: {ident}")


class UniqueConstraintViolation(BackofficeError):
    def __init__(self, field: str, value: Any = None) -> None:
        self.field = field
        self.value = value
        if value is None:
            super().__init__(f"{field} must be unique")
        else:
            super().__init__(f"{field} already exists: {value}")


class Forbidden(BackofficeError):
    pass


class PendingApproval(BackofficeError):
    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__("Account is pending approval")


class AdminProtected(BackofficeError):
    pass


class StorageError(BackofficeError):
    """Infrastructure failure. ``operation`` names what was attempted, ``cause`` keeps the original error."""

    def __init__(self, operation: str, cause: BaseException | str) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation}: {cause}")


class StorageUnavailable(StorageError):
    pass


class MigrationFailed(StorageError):
    pass


class WriteFailed(StorageError):
    pass
