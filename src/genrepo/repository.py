"""Generic SQL repository for pydantic entities."""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any, Generic, TypeVar

import sqlalchemy as sa
from pydantic import BaseModel, TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from genrepo.adapters.sql import (
    SQLAlchemyGateway,
    build_table,
    compile_criteria,
    compile_order,
    get_pk_column,
    row_scope,
    update_by_key,
)
from genrepo.cache import CacheAdapter, MemoryCacheAdapter
from genrepo.criteria import (
    ALL,
    Condition,
    Criteria,
    Field,
    Operator,
    OrderField,
    Predicate,
    PrimaryKey,
    as_criteria,
    qualifier_names,
)
from genrepo.exceptions import (
    AmbiguousMatchError,
    EntityNotFoundError,
    IntegrityViolationError,
    PartialBatchFailureError,
    PersistenceError,
    QueryError,
)
from genrepo.gateway import BulkOperation, CommandType, DbParameter, ExecutionGateway, Row
from genrepo.projection import query_and_return_json
from genrepo.schema import EntitySchema, FieldType, is_identifier

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)
K = TypeVar("K")


class SQLRepository(Generic[T, K]):
    """Typed CRUD, merge and raw command execution for one entity type.

    Implements both :class:`~genrepo.protocols.ReadRepository` and
    :class:`~genrepo.protocols.WriteRepository`. All statements go through an
    :class:`~genrepo.gateway.ExecutionGateway`; pass an ``AsyncEngine`` to use
    the SQLAlchemy gateway.

    The only state kept between calls is the cache used by ``query_all`` with a
    cache key. Write methods accept ``connection=`` to run inside a
    caller-owned transaction, which is never committed, rolled back or closed
    here.
    """

    def __init__(
        self,
        gateway: ExecutionGateway | AsyncEngine,
        model: type[T],
        *,
        schema: EntitySchema | None = None,
        cache: CacheAdapter | None = None,
    ) -> None:
        self._gateway: ExecutionGateway = (
            SQLAlchemyGateway(gateway) if isinstance(gateway, AsyncEngine) else gateway
        )
        self._model = model
        self._schema = schema or EntitySchema.from_model(model)
        self._metadata = sa.MetaData()
        self._table = build_table(self._schema, self._metadata)
        self._pk = get_pk_column(self._table)
        self._cache: CacheAdapter = cache if cache is not None else MemoryCacheAdapter()
        self._key_adapter: TypeAdapter[Any] = TypeAdapter(self._schema.key_type)

    @property
    def name(self) -> str:
        return self._schema.name

    @property
    def schema(self) -> EntitySchema:
        return self._schema

    @property
    def table(self) -> sa.Table:
        return self._table

    @property
    def gateway(self) -> ExecutionGateway:
        return self._gateway

    @property
    def cache(self) -> CacheAdapter:
        return self._cache

    async def ensure_table(self) -> None:
        """Create the entity table if it does not exist."""
        async with self._gateway.transaction(entity_name=self.name) as conn:
            await conn.run_sync(self._metadata.create_all)

    # -- Reads ----------------------------------------------------------------

    async def query(self, criteria: Any, order_by: Sequence[OrderField | str] | OrderField | str = ()) -> list[T]:
        """Return the entities matching *criteria*.

        *criteria* is a primary key value, a mapping of field values, or a
        ``PrimaryKey``/``Predicate``. Ordering only applies to predicates; a
        primary key matches at most one row. A single ``OrderField`` or name
        (``"-name"`` for descending) may be passed on its own.
        """
        if isinstance(order_by, (str, OrderField)):
            order_by = (order_by,)
        crit = self._classify(criteria)
        stmt = sa.select(self._table).where(self._where(crit))
        if order_by and isinstance(crit, Predicate):
            fields = [OrderField.parse(o) if isinstance(o, str) else o for o in order_by]
            stmt = stmt.order_by(*compile_order(fields, self._table, entity_name=self.name))
        rows = await self._gateway.query(stmt, entity_name=self.name)
        return [self._to_entity(row) for row in rows]

    async def query_all(self, cache_key: str | None = None, renew_cache: bool = False) -> list[T]:
        """Return every entity, optionally through the cache entry under *cache_key*.

        With a cache key: ``renew_cache`` always fetches and overwrites the
        entry; otherwise a stored entry is returned without touching the data
        source, and a missing one is fetched and stored. Entries never expire.
        Each call returns fresh copies, so the stored entry stays unchanged.
        """
        if cache_key is None:
            return await self.query(ALL)

        if not renew_cache:
            entry = self._cache.get(cache_key)
            if entry is not None:
                logger.debug("Cache hit for %s (key=%s)", self.name, cache_key)
                return self._copies(entry.payload)
            logger.debug("Cache miss for %s (key=%s)", self.name, cache_key)
        else:
            logger.debug("Renewing cache for %s (key=%s)", self.name, cache_key)

        entities = await self.query(ALL)
        entry = self._cache.set(cache_key, entities)
        return self._copies(entry.payload)

    async def max(self, table_name: str, field_name: str, criteria: Any) -> Any | None:
        """Return the largest *field_name* value among rows of *table_name* matching *criteria*.

        Returns None only when no row matches.

        Raises:
            IntegrityViolationError: If rows match but *field_name* is null in all of them.
            QueryError: If a table or field name is not a valid identifier.
        """
        crit = self._classify(criteria)
        table = self._aggregate_table(table_name, field_name, crit)
        if field_name not in table.c:
            raise QueryError(entity_name=self.name, operation="max", detail=f"Unknown field {field_name!r}.")
        stmt = (
            sa.select(
                sa.func.max(table.c[field_name]).label("max_value"),
                sa.func.count().label("matched"),
            )
            .select_from(table)
            .where(compile_criteria(crit, table, self._pk.name, entity_name=self.name))
        )
        rows = await self._gateway.query(stmt, entity_name=self.name)
        matched = rows[0]["matched"] if rows else 0
        if not matched:
            return None
        value = rows[0]["max_value"]
        if value is None:
            logger.error("max(%s.%s) matched %d rows with only null values", table_name, field_name, matched)
            raise IntegrityViolationError(
                entity_name=self.name,
                operation="max",
                detail=f"{matched} rows match but {field_name!r} is null in all of them.",
            )
        return value

    # -- Writes ---------------------------------------------------------------

    async def insert(self, entity: T, *, connection: AsyncConnection | None = None) -> K:
        """Insert *entity* and return its primary key.

        A missing integer key is generated by the data source and a missing UUID
        key is generated here; string keys must be supplied. The entity object
        itself is not modified.
        """
        key = await self._gateway.insert(
            self._table, self._insert_row(entity), connection=connection, entity_name=self.name
        )
        return self._key_adapter.validate_python(key)

    async def insert_all(self, entities: Iterable[T], *, connection: AsyncConnection | None = None) -> int:
        rows = [self._insert_row(e) for e in entities]
        return await self._gateway.bulk_write(
            BulkOperation.INSERT, self._table, rows, connection=connection, entity_name=self.name
        )

    async def merge(
        self,
        entity: T,
        qualifiers: Iterable[Field | str] | None = None,
        *,
        connection: AsyncConnection | None = None,
    ) -> K:
        """Update the matching row or insert *entity*, returning the affected key.

        Without qualifiers the row is matched by primary key only. With
        qualifiers, zero matches inserts, one match updates that row (its key is
        returned), and more than one raises :class:`AmbiguousMatchError` without
        changing anything.
        """
        names = qualifier_names(qualifiers or ())
        async with self._gateway.transaction(connection, entity_name=self.name) as conn:
            return await self._merge_one(conn, entity, names)

    async def merge_all(
        self,
        entities: Iterable[T],
        qualifiers: Iterable[Field | str] | None = None,
        *,
        connection: AsyncConnection | None = None,
    ) -> int:
        """Merge every entity as one unit and return how many were merged.

        Raises:
            PartialBatchFailureError: If any merge fails; see
                :meth:`~genrepo.gateway.ExecutionGateway.bulk_write` for what
                ``committed`` reports.
        """
        batch = list(entities)
        if not batch:
            return 0
        names = qualifier_names(qualifiers or ())
        merged = 0
        async with self._gateway.transaction(connection, entity_name=self.name) as conn:
            try:
                for entity in batch:
                    async with row_scope(conn, borrowed=connection is not None):
                        await self._merge_one(conn, entity, names)
                    merged += 1
            except PersistenceError as exc:
                committed = merged if connection is not None else 0
                logger.error(
                    "merge_all for %s stopped after %d of %d entities (%d committed)",
                    self.name,
                    merged,
                    len(batch),
                    committed,
                )
                raise PartialBatchFailureError(
                    entity_name=self.name,
                    operation="merge_all",
                    detail=f"{committed} of {len(batch)} rows committed.",
                    committed=committed,
                    requested=len(batch),
                    cause=exc,
                ) from exc
        return merged

    async def update(self, entity: T, *, connection: AsyncConnection | None = None) -> int:
        """Update the row keyed by the entity's primary key.

        Raises:
            EntityNotFoundError: If no row has that key.
            QueryError: If the entity has no key value.
        """
        row = self._to_row(entity)
        key = row.get(self._pk.name)
        if key is None:
            raise QueryError(entity_name=self.name, operation="update", detail="Entity has no primary key value.")
        affected = await self._update_by_key(key, row, connection)
        if affected == 0:
            raise EntityNotFoundError(entity_name=self.name, operation="update", detail=f"No row with key {key!r}.")
        return affected

    async def update_all(self, entities: Iterable[T], *, connection: AsyncConnection | None = None) -> int:
        rows = [self._to_row(e) for e in entities]
        return await self._gateway.bulk_write(
            BulkOperation.UPDATE, self._table, rows, connection=connection, entity_name=self.name
        )

    async def delete(self, criteria: Any, *, connection: AsyncConnection | None = None) -> int:
        """Delete the rows matching *criteria* and return how many were removed."""
        stmt = self._table.delete().where(self._where(self._classify(criteria)))
        return await self._gateway.execute(stmt, connection=connection, entity_name=self.name)

    async def delete_all(self, entities: Iterable[T], *, connection: AsyncConnection | None = None) -> int:
        rows = [{self._pk.name: getattr(e, self._pk.name)} for e in entities]
        return await self._gateway.bulk_write(
            BulkOperation.DELETE, self._table, rows, connection=connection, entity_name=self.name
        )

    # -- Raw execution --------------------------------------------------------

    async def execute_non_query(
        self,
        command_text: str,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
    ) -> int:
        return await self._gateway.execute(command_text, command_type, parameters, entity_name=self.name)

    async def execute_scalar(
        self,
        command_text: str,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
    ) -> K | None:
        """Return the first column of the first row, coerced to the entity's key type."""
        value = await self._gateway.scalar(command_text, command_type, parameters, entity_name=self.name)
        if value is None:
            return None
        try:
            return self._key_adapter.validate_python(value)
        except ValidationError as exc:
            raise QueryError(
                entity_name=self.name,
                operation="execute_scalar",
                detail=f"Result is not a valid {self._schema.key_type.__name__} key.",
                cause=exc,
            ) from exc

    async def execute_scalar_string(
        self,
        command_text: str,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
    ) -> str | None:
        value = await self._gateway.scalar(command_text, command_type, parameters, entity_name=self.name)
        return None if value is None else str(value)

    def execute_reader(
        self,
        command_text: str,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
    ) -> AbstractAsyncContextManager[AsyncIterator[Row]]:
        """Open a forward-only row cursor; use as ``async with repo.execute_reader(...) as rows``."""
        return self._gateway.reader(command_text, command_type, parameters, entity_name=self.name)

    async def execute_query(
        self,
        command_text: str,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
    ) -> list[T]:
        rows = await self._gateway.query(command_text, command_type, parameters, entity_name=self.name)
        return [self._to_entity(row) for row in rows]

    async def query_and_return_json(
        self,
        command_text: str,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
    ) -> str:
        return await query_and_return_json(
            self._gateway, command_text, command_type, parameters, entity_name=self.name
        )

    # -- Internals ------------------------------------------------------------

    def _classify(self, criteria: Any) -> Criteria:
        return as_criteria(criteria, self._schema.key_type)

    def _where(self, criteria: Criteria) -> sa.ColumnElement[bool]:
        return compile_criteria(criteria, self._table, self._pk.name, entity_name=self.name)

    def _aggregate_table(self, table_name: str, field_name: str, criteria: Criteria) -> sa.TableClause:
        """Own table when *table_name* names it, otherwise a lightweight clause for the referenced columns."""
        if table_name == self._table.name:
            return self._table
        if isinstance(criteria, PrimaryKey):
            columns = {field_name, self._pk.name}
        else:
            columns = {field_name, *(c.field for c in criteria.conditions)}
        for name in (table_name, *columns):
            if not is_identifier(name):
                raise QueryError(entity_name=self.name, operation="max", detail=f"{name!r} is not a valid identifier.")
        return sa.table(table_name, *(sa.column(c) for c in sorted(columns)))

    def _to_row(self, entity: T) -> Row:
        data = entity.model_dump()
        return {name: data[name] for name in self._schema.field_names if name in data}

    def _to_entity(self, row: Row) -> T:
        try:
            return self._model.model_validate(row)
        except ValidationError as exc:
            raise QueryError(
                entity_name=self.name,
                operation="materialize",
                detail=f"Row does not validate as {self._model.__name__}.",
                cause=exc,
            ) from exc

    def _copies(self, entities: Iterable[T]) -> list[T]:
        return [e.model_copy(deep=True) for e in entities]

    def _insert_row(self, entity: T) -> Row:
        row = self._to_row(entity)
        pk = self._pk.name
        if row.get(pk) is not None:
            return row
        key_type = self._schema.primary_key.field_type
        if key_type is FieldType.UUID:
            row[pk] = uuid.uuid4()
        elif key_type is FieldType.INTEGER:
            row.pop(pk, None)
        else:
            raise QueryError(
                entity_name=self.name,
                operation="insert",
                detail="String primary keys must be assigned before insert.",
            )
        return row

    async def _update_by_key(self, key: Any, row: Row, connection: AsyncConnection | None) -> int:
        stmt = update_by_key(self._table, key, row)
        if isinstance(stmt, sa.Select):
            return await self._gateway.scalar(stmt, connection=connection, entity_name=self.name)
        return await self._gateway.execute(stmt, connection=connection, entity_name=self.name)

    async def _merge_one(self, conn: AsyncConnection, entity: T, qualifiers: list[str]) -> K:
        row = self._to_row(entity)
        if not qualifiers:
            key = row.get(self._pk.name)
            if key is not None and await self._update_by_key(key, row, conn):
                return self._key_adapter.validate_python(key)
            return await self.insert(entity, connection=conn)

        predicate = Predicate(tuple(Condition(name, Operator.EQ, row.get(name)) for name in qualifiers))
        stmt = (
            sa.select(
                sa.func.count().label("matched"),
                sa.func.min(self._pk).label("key"),
            )
            .select_from(self._table)
            .where(self._where(predicate))
        )
        found = (await self._gateway.query(stmt, connection=conn, entity_name=self.name))[0]
        matched = found["matched"]
        if matched > 1:
            logger.warning("merge for %s: qualifiers %s match %d rows", self.name, qualifiers, matched)
            raise AmbiguousMatchError(
                entity_name=self.name,
                operation="merge",
                detail=f"Qualifiers {qualifiers} match {matched} rows.",
                matches=matched,
            )
        if matched == 0:
            return await self.insert(entity, connection=conn)
        key = found["key"]
        await self._update_by_key(key, row, conn)
        return self._key_adapter.validate_python(key)
