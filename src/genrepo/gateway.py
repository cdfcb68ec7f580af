"""Execution gateway contract: the boundary between repositories and the data source."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, Union, runtime_checkable

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection

# Entity name used in error context for commands not tied to an entity.
RAW_COMMAND = "raw"


class CommandType(str, Enum):
    """How the gateway interprets command text."""

    TEXT = "text"
    STORED_PROCEDURE = "stored_procedure"
    TABLE_DIRECT = "table_direct"


class ParameterDirection(str, Enum):
    IN = "in"
    OUT = "out"
    IN_OUT = "in_out"
    RETURN_VALUE = "return_value"


class BulkOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class DbParameter:
    """A named command parameter. The caller owns it; the gateway only binds it."""

    name: str
    value: Any = None
    direction: ParameterDirection = ParameterDirection.IN

    @property
    def bind_name(self) -> str:
        """Name without a leading ``@`` or ``:`` marker."""
        return self.name.lstrip("@:")


Command = Union[str, sa.Executable]
Row = dict[str, Any]


@runtime_checkable
class ExecutionGateway(Protocol):
    """Executes commands against the data source.

    ``command`` is either text, interpreted according to ``command_type``, or a
    SQLAlchemy executable built by a repository (``command_type`` is then
    ignored). A ``connection`` argument borrows a caller-owned connection that
    is already inside a transaction; the gateway never commits, rolls back or
    closes it.
    """

    def transaction(
        self, connection: AsyncConnection | None = None, *, entity_name: str = RAW_COMMAND
    ) -> AbstractAsyncContextManager[AsyncConnection]: ...

    async def execute(
        self,
        command: Command,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
        *,
        connection: AsyncConnection | None = None,
        entity_name: str = RAW_COMMAND,
    ) -> int: ...

    async def query(
        self,
        command: Command,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
        *,
        connection: AsyncConnection | None = None,
        entity_name: str = RAW_COMMAND,
    ) -> list[Row]: ...

    async def scalar(
        self,
        command: Command,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
        *,
        connection: AsyncConnection | None = None,
        entity_name: str = RAW_COMMAND,
    ) -> Any: ...

    def reader(
        self,
        command: Command,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
        *,
        connection: AsyncConnection | None = None,
        entity_name: str = RAW_COMMAND,
    ) -> AbstractAsyncContextManager[AsyncIterator[Row]]: ...

    async def insert(
        self,
        table: sa.Table,
        row: Row,
        *,
        connection: AsyncConnection | None = None,
        entity_name: str = RAW_COMMAND,
    ) -> Any: ...

    async def bulk_write(
        self,
        operation: BulkOperation,
        table: sa.Table,
        rows: Sequence[Row],
        *,
        connection: AsyncConnection | None = None,
        entity_name: str = RAW_COMMAND,
    ) -> int: ...
