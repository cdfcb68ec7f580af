"""Domain exceptions for the repository layer.

Driver exceptions raised by the execution gateway are caught and re-raised as
one of these so that callers never see raw database errors.
"""

from __future__ import annotations

from typing import Any


class PersistenceError(Exception):
    """Base exception for all repository errors.

    Attributes:
        entity_name: The name of the entity/table involved.
        operation: The operation that failed (e.g. ``"insert"``, ``"merge"``).
        detail: A sanitised description of what went wrong.
    """

    def __init__(
        self,
        *,
        entity_name: str,
        operation: str,
        detail: str,
        cause: Exception | None = None,
    ) -> None:
        self.entity_name = entity_name
        self.operation = operation
        self.detail = detail
        msg = f"[{entity_name}] {operation} failed: {detail}"
        super().__init__(msg)
        if cause is not None:
            self.__cause__ = cause


class EntityNotFoundError(PersistenceError):
    """Raised when a row that must exist does not."""


class AmbiguousMatchError(PersistenceError):
    """Raised when merge qualifiers identify more than one row."""

    def __init__(self, *, matches: int, **kwargs: Any) -> None:
        self.matches = matches
        super().__init__(**kwargs)


class IntegrityViolationError(PersistenceError):
    """Raised for constraint failures and data that breaks an integrity expectation."""


class ExecutionFailureError(PersistenceError):
    """Raised when the gateway cannot execute a command."""


class ConnectionFailedError(ExecutionFailureError):
    """Raised when the data source cannot be reached."""


class QueryError(ExecutionFailureError):
    """Raised for invalid commands, unknown fields, or unsupported parameters."""


class TransactionError(ExecutionFailureError):
    """Raised when a transaction handle is unusable or fails to commit."""


class PartialBatchFailureError(PersistenceError):
    """Raised when a bulk operation stops before every row is applied.

    Attributes:
        committed: Rows that remain applied after the failure. Zero when the
            batch ran in its own transaction, since that transaction is
            rolled back; the rows applied so far when it ran inside a
            caller-owned transaction.
        requested: Rows in the batch.
    """

    def __init__(self, *, committed: int, requested: int, **kwargs: Any) -> None:
        self.committed = committed
        self.requested = requested
        super().__init__(**kwargs)
