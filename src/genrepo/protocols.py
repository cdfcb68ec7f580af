"""Repository protocols: the read and write contracts callers program against."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol, TypeVar, runtime_checkable

from sqlalchemy.ext.asyncio import AsyncConnection

from genrepo.criteria import Field, OrderField
from genrepo.gateway import CommandType, DbParameter, Row

T = TypeVar("T")
K = TypeVar("K")


@runtime_checkable
class JsonReadRepository(Protocol):
    """Schema-agnostic read access returning JSON text."""

    async def query_and_return_json(
        self,
        command_text: str,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
    ) -> str:
        """Execute a command and return its rows as a JSON array of objects."""
        ...


@runtime_checkable
class ReadRepository(Protocol[T, K]):
    """Typed read access for entities of type ``T`` keyed by ``K``."""

    async def query(self, criteria: Any, order_by: Sequence[OrderField | str] | OrderField | str = ()) -> list[T]:
        """Return the entities matching a primary key or predicate."""
        ...

    async def query_all(self, cache_key: str | None = None, renew_cache: bool = False) -> list[T]:
        """Return every entity, through the cache entry under *cache_key* when one is given."""
        ...

    async def max(self, table_name: str, field_name: str, criteria: Any) -> Any | None:
        """Return the maximum of *field_name* over matching rows, or None if none match."""
        ...


@runtime_checkable
class WriteRepository(Protocol[T, K]):
    """Typed write access plus raw command execution."""

    async def insert(self, entity: T, *, connection: AsyncConnection | None = None) -> K:
        """Insert an entity and return its primary key."""
        ...

    async def insert_all(self, entities: Iterable[T], *, connection: AsyncConnection | None = None) -> int:
        """Insert entities as one unit and return how many were inserted."""
        ...

    async def merge(
        self,
        entity: T,
        qualifiers: Iterable[Field | str] | None = None,
        *,
        connection: AsyncConnection | None = None,
    ) -> K:
        """Update the row identified by key or qualifiers, or insert a new one."""
        ...

    async def merge_all(
        self,
        entities: Iterable[T],
        qualifiers: Iterable[Field | str] | None = None,
        *,
        connection: AsyncConnection | None = None,
    ) -> int:
        """Merge entities as one unit and return how many were merged."""
        ...

    async def update(self, entity: T, *, connection: AsyncConnection | None = None) -> int:
        """Update the row with the entity's primary key."""
        ...

    async def update_all(self, entities: Iterable[T], *, connection: AsyncConnection | None = None) -> int:
        """Update entities by their own keys as one unit."""
        ...

    async def delete(self, criteria: Any, *, connection: AsyncConnection | None = None) -> int:
        """Delete the rows matching a primary key or predicate."""
        ...

    async def delete_all(self, entities: Iterable[T], *, connection: AsyncConnection | None = None) -> int:
        """Delete entities by their keys as one unit."""
        ...

    async def execute_non_query(
        self,
        command_text: str,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
    ) -> int: ...

    async def execute_scalar(
        self,
        command_text: str,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
    ) -> K | None: ...

    async def execute_scalar_string(
        self,
        command_text: str,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
    ) -> str | None: ...

    def execute_reader(
        self,
        command_text: str,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
    ) -> AbstractAsyncContextManager[AsyncIterator[Row]]: ...

    async def execute_query(
        self,
        command_text: str,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
    ) -> list[T]: ...
