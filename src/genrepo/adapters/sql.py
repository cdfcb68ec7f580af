"""SQLAlchemy async execution gateway."""

from __future__ import annotations

import logging
import operator
import re
from collections.abc import AsyncIterator, Callable, Iterable, Iterator, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager, contextmanager, nullcontext
from typing import Any

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.engine import Result
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncResult

from genrepo.criteria import Criteria, Direction, Operator, OrderField, PrimaryKey
from genrepo.exceptions import (
    ConnectionFailedError,
    EntityNotFoundError,
    ExecutionFailureError,
    IntegrityViolationError,
    PartialBatchFailureError,
    PersistenceError,
    QueryError,
    TransactionError,
)
from genrepo.gateway import RAW_COMMAND, BulkOperation, Command, CommandType, DbParameter, ParameterDirection, Row
from genrepo.schema import EntitySchema, FieldType

logger = logging.getLogger(__name__)

_FIELD_TYPE_MAP: dict[FieldType, type[sa.types.TypeEngine]] = {
    FieldType.STRING: sa.String,
    FieldType.TEXT: sa.Text,
    FieldType.INTEGER: sa.Integer,
    FieldType.FLOAT: sa.Float,
    FieldType.BOOLEAN: sa.Boolean,
    FieldType.DATETIME: sa.DateTime,
    FieldType.DATE: sa.Date,
    FieldType.UUID: sa.Uuid,
    FieldType.JSON: sa.JSON,
    FieldType.BINARY: sa.LargeBinary,
}

# Optionally schema-qualified object name for procedures and table-direct commands.
_OBJECT_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

_COMPARISONS: dict[Operator, Callable[[Any, Any], Any]] = {
    Operator.GT: operator.gt,
    Operator.GE: operator.ge,
    Operator.LT: operator.lt,
    Operator.LE: operator.le,
}

_OUTPUT_DIRECTIONS = (ParameterDirection.OUT, ParameterDirection.RETURN_VALUE)


def build_table(entity: EntitySchema, metadata: sa.MetaData) -> sa.Table:
    """Build a SQLAlchemy Table from an EntitySchema."""
    columns: list[sa.Column] = []
    for field in entity.fields:
        sa_type = _FIELD_TYPE_MAP.get(field.field_type, sa.String)
        col = sa.Column(
            field.name,
            sa_type(255) if sa_type is sa.String else sa_type(),
            primary_key=field.primary_key,
            nullable=field.nullable,
            unique=field.unique,
            index=field.indexed,
        )
        columns.append(col)
    return sa.Table(entity.table, metadata, *columns)


def get_pk_column(table: sa.Table) -> sa.Column:
    """Return the primary key column of a table."""
    pk_cols = list(table.primary_key.columns)
    if not pk_cols:
        raise ValueError(f"Table '{table.name}' has no primary key column.")
    return pk_cols[0]


def update_by_key(table: sa.Table, key: Any, row: Row) -> sa.Executable:
    """UPDATE the row keyed by *key* with the non-key values of *row*.

    A row holding nothing but its key has nothing to write, so the statement
    counts the matching row instead; see :func:`affected_rows`.
    """
    pk = get_pk_column(table)
    values = {k: v for k, v in row.items() if k != pk.name}
    if not values:
        return sa.select(sa.func.count()).select_from(table).where(pk == key)
    return table.update().where(pk == key).values(**values)


def affected_rows(result: Result[Any]) -> int:
    """Rows affected by an :func:`update_by_key` statement."""
    return result.scalar_one() if result.returns_rows else result.rowcount


def row_scope(conn: AsyncConnection, *, borrowed: bool) -> AbstractAsyncContextManager[Any]:
    """SAVEPOINT around one row of a batch running in a caller-owned transaction.

    A failed row then rolls back alone and the caller's transaction stays
    usable with every earlier row still applied. Batches in their own
    transaction roll back as a whole, so they need no savepoint.
    """
    return conn.begin_nested() if borrowed else nullcontext()


def _column(table: sa.TableClause, name: str, entity_name: str) -> sa.ColumnElement[Any]:
    if name not in table.c:
        raise QueryError(
            entity_name=entity_name,
            operation="compile_criteria",
            detail=f"Unknown field {name!r}.",
        )
    return table.c[name]


def _compile_condition(table: sa.TableClause, field: str, op: Operator, value: Any, entity_name: str) -> Any:
    col = _column(table, field, entity_name)
    if op is Operator.EQ:
        return col.is_(None) if value is None else col == value
    if op is Operator.NE:
        return col.is_not(None) if value is None else col != value
    if op is Operator.IS_NULL:
        return col.is_(None)
    if op is Operator.IS_NOT_NULL:
        return col.is_not(None)
    if op is Operator.IN:
        return col.in_(list(value))
    if op is Operator.NOT_IN:
        return col.not_in(list(value))
    if op is Operator.LIKE:
        return col.like(value)
    return _COMPARISONS[op](col, value)


def compile_criteria(
    criteria: Criteria,
    table: sa.TableClause,
    key_name: str,
    *,
    entity_name: str,
) -> sa.ColumnElement[bool]:
    """Translate a criteria variant into a WHERE clause.

    An empty predicate compiles to ``true`` so it matches every row.
    """
    if isinstance(criteria, PrimaryKey):
        return _column(table, key_name, entity_name) == criteria.value
    if criteria.is_empty:
        return sa.true()
    return sa.and_(
        *(_compile_condition(table, c.field, c.operator, c.value, entity_name) for c in criteria.conditions)
    )


def compile_order(order_by: Sequence[OrderField], table: sa.TableClause, *, entity_name: str) -> list[Any]:
    clauses = []
    for order in order_by:
        col = _column(table, order.name, entity_name)
        clauses.append(col.desc() if order.direction is Direction.DESC else col.asc())
    return clauses


@contextmanager
def _translate_errors(
    entity_name: str,
    operation: str,
    failure: type[ExecutionFailureError] = ExecutionFailureError,
) -> Iterator[None]:
    """Re-raise SQLAlchemy errors as domain errors. Cancellation passes through.

    Errors that are neither constraint, syntax nor connection failures are
    raised as *failure*.
    """
    try:
        yield
    except IntegrityError as exc:
        logger.error("SQL %s failed for %s: constraint violation", operation, entity_name)
        raise IntegrityViolationError(
            entity_name=entity_name,
            operation=operation,
            detail="The command violates a data source constraint.",
            cause=exc,
        ) from exc
    except ProgrammingError as exc:
        logger.error("SQL %s failed for %s: %s", operation, entity_name, type(exc).__name__)
        raise QueryError(
            entity_name=entity_name,
            operation=operation,
            detail="The command is invalid for this data source.",
            cause=exc,
        ) from exc
    except DBAPIError as exc:
        logger.error("SQL %s failed for %s: %s", operation, entity_name, type(exc).__name__)
        if exc.connection_invalidated or isinstance(exc, InterfaceError):
            raise ConnectionFailedError(
                entity_name=entity_name,
                operation=operation,
                detail="Database connection failed.",
                cause=exc,
            ) from exc
        raise failure(
            entity_name=entity_name,
            operation=operation,
            detail="Database operation failed." if isinstance(exc, OperationalError) else "Command execution failed.",
            cause=exc,
        ) from exc
    except SQLAlchemyError as exc:
        logger.error("SQL %s failed for %s: %s", operation, entity_name, type(exc).__name__)
        raise failure(
            entity_name=entity_name,
            operation=operation,
            detail="Command execution failed.",
            cause=exc,
        ) from exc


def _ensure_usable(connection: AsyncConnection, entity_name: str) -> None:
    """A borrowed connection must be open and already inside a transaction."""
    if connection.closed:
        raise TransactionError(
            entity_name=entity_name,
            operation="transaction",
            detail="The supplied connection is closed.",
        )
    if not connection.in_transaction():
        raise TransactionError(
            entity_name=entity_name,
            operation="transaction",
            detail="The supplied connection has no active transaction.",
        )


def _bind_parameters(parameters: Sequence[DbParameter], entity_name: str) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for param in parameters:
        if param.direction in _OUTPUT_DIRECTIONS:
            raise QueryError(
                entity_name=entity_name,
                operation="bind_parameters",
                detail=f"Parameter {param.name!r}: {param.direction.value} parameters are not supported.",
            )
        params[param.bind_name] = param.value
    return params


def _prepare(
    command: Command,
    command_type: CommandType,
    parameters: Sequence[DbParameter],
    entity_name: str,
    dialect_name: str = "default",
) -> tuple[sa.Executable, dict[str, Any] | None]:
    """Turn a command and its parameters into an executable statement.

    Stored procedures are invoked with ``EXEC`` on SQL Server and ``CALL``
    everywhere else.
    """
    params = _bind_parameters(parameters, entity_name)
    if not isinstance(command, str):
        return command, params or None
    command_type = CommandType(command_type)
    if command_type is CommandType.TEXT:
        return sa.text(command), params or None

    if not _OBJECT_NAME_RE.match(command):
        raise QueryError(
            entity_name=entity_name,
            operation="prepare",
            detail=f"{command!r} is not a valid {command_type.value} name.",
        )
    if command_type is CommandType.STORED_PROCEDURE:
        if dialect_name == "mssql":
            binds = ", ".join(f"@{name} = :{name}" for name in params)
            return sa.text(f"EXEC {command} {binds}".rstrip()), params or None
        binds = ", ".join(f":{name}" for name in params)
        return sa.text(f"CALL {command}({binds})"), params or None

    schema, _, name = command.rpartition(".")
    stmt = sa.select(sa.literal_column("*")).select_from(sa.table(name, schema=schema or None))
    return stmt, None


def column_names(keys: Iterable[str]) -> list[str]:
    """Result column names with repeats made unique: ``id, id`` becomes ``id, id_1``."""
    names: list[str] = []
    seen: set[str] = set()
    for key in keys:
        name, n = key, 0
        while name in seen:
            n += 1
            name = f"{key}_{n}"
        seen.add(name)
        names.append(name)
    return names


async def _iterate_rows(result: AsyncResult[Any]) -> AsyncIterator[Row]:
    names = column_names(result.keys())
    async for row in result:
        yield dict(zip(names, row))


def _rows(result: Result[Any]) -> list[Row]:
    names = column_names(result.keys())
    return [dict(zip(names, row)) for row in result.all()]


def _sqlite_connect(dbapi_connection: Any, connection_record: Any) -> None:
    # Hand transaction control to SQLAlchemy instead of the driver.
    dbapi_connection.isolation_level = None


def _sqlite_begin(conn: sa.Connection) -> None:
    conn.exec_driver_sql("BEGIN")


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Make SQLite emit its own ``BEGIN`` so SAVEPOINTs nest inside the transaction.

    Without this the driver defers ``BEGIN`` until the first write, and
    releasing the outermost SAVEPOINT commits.
    """
    sync_engine = engine.sync_engine
    if not event.contains(sync_engine, "connect", _sqlite_connect):
        event.listen(sync_engine, "connect", _sqlite_connect)
        event.listen(sync_engine, "begin", _sqlite_begin)


class SQLAlchemyGateway:
    """Execution gateway backed by a SQLAlchemy ``AsyncEngine``.

    Without a borrowed connection every call acquires its own connection and
    transaction via ``engine.begin()``, which commits on success, rolls back on
    error, and releases the connection on every exit path.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    def _dialect_name(self, connection: AsyncConnection | None) -> str:
        return (connection if connection is not None else self._engine).dialect.name

    @asynccontextmanager
    async def transaction(
        self, connection: AsyncConnection | None = None, *, entity_name: str = RAW_COMMAND
    ) -> AsyncIterator[AsyncConnection]:
        """Yield a connection inside a transaction, borrowing *connection* if given."""
        if connection is not None:
            _ensure_usable(connection, entity_name)
            yield connection
            return
        with _translate_errors(entity_name, "transaction", failure=TransactionError):
            async with self._engine.begin() as conn:
                yield conn

    async def execute(
        self,
        command: Command,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
        *,
        connection: AsyncConnection | None = None,
        entity_name: str = RAW_COMMAND,
    ) -> int:
        """Execute a command and return the number of rows affected."""
        stmt, params = _prepare(command, command_type, parameters, entity_name, self._dialect_name(connection))
        async with self.transaction(connection, entity_name=entity_name) as conn:
            with _translate_errors(entity_name, "execute"):
                result = await conn.execute(stmt, params)
                return result.rowcount

    async def query(
        self,
        command: Command,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
        *,
        connection: AsyncConnection | None = None,
        entity_name: str = RAW_COMMAND,
    ) -> list[Row]:
        """Execute a command and return every row as a column-ordered dict."""
        stmt, params = _prepare(command, command_type, parameters, entity_name, self._dialect_name(connection))
        async with self.transaction(connection, entity_name=entity_name) as conn:
            with _translate_errors(entity_name, "query"):
                result = await conn.execute(stmt, params)
                return _rows(result)

    async def scalar(
        self,
        command: Command,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
        *,
        connection: AsyncConnection | None = None,
        entity_name: str = RAW_COMMAND,
    ) -> Any:
        """Execute a command and return the first column of the first row, or None."""
        stmt, params = _prepare(command, command_type, parameters, entity_name, self._dialect_name(connection))
        async with self.transaction(connection, entity_name=entity_name) as conn:
            with _translate_errors(entity_name, "scalar"):
                result = await conn.execute(stmt, params)
                return result.scalar()

    @asynccontextmanager
    async def reader(
        self,
        command: Command,
        command_type: CommandType = CommandType.TEXT,
        parameters: Sequence[DbParameter] = (),
        *,
        connection: AsyncConnection | None = None,
        entity_name: str = RAW_COMMAND,
    ) -> AsyncIterator[AsyncIterator[Row]]:
        """Stream rows through a forward-only cursor released when the block exits."""
        stmt, params = _prepare(command, command_type, parameters, entity_name, self._dialect_name(connection))
        async with self.transaction(connection, entity_name=entity_name) as conn:
            with _translate_errors(entity_name, "reader"):
                result = await conn.stream(stmt, params)
                try:
                    yield _iterate_rows(result)
                finally:
                    await result.close()

    async def insert(
        self,
        table: sa.Table,
        row: Row,
        *,
        connection: AsyncConnection | None = None,
        entity_name: str = RAW_COMMAND,
    ) -> Any:
        """Insert one row and return its generated or assigned primary key."""
        stmt = table.insert().values(**row) if row else table.insert()
        async with self.transaction(connection, entity_name=entity_name) as conn:
            with _translate_errors(entity_name, "insert"):
                result = await conn.execute(stmt)
                return result.inserted_primary_key[0]

    async def bulk_write(
        self,
        operation: BulkOperation,
        table: sa.Table,
        rows: Sequence[Row],
        *,
        connection: AsyncConnection | None = None,
        entity_name: str = RAW_COMMAND,
    ) -> int:
        """Apply *operation* to every row as one unit and return the rows affected.

        Raises:
            PartialBatchFailureError: If any row fails. ``committed`` is 0 when
                the batch ran in its own (rolled back) transaction. Inside the
                caller's transaction each row runs under a SAVEPOINT, so only the
                failed row is undone and ``committed`` counts the rows that remain
                applied for the caller to commit.
        """
        if not rows:
            return 0
        if connection is not None:
            _ensure_usable(connection, entity_name)
        operation = BulkOperation(operation)
        applied = 0
        try:
            async with self.transaction(connection, entity_name=entity_name) as conn:
                for row in rows:
                    with _translate_errors(entity_name, f"bulk_{operation.value}"):
                        async with row_scope(conn, borrowed=connection is not None):
                            applied += await self._apply(conn, operation, table, row, entity_name)
        except PersistenceError as exc:
            committed = applied if connection is not None else 0
            logger.error(
                "Bulk %s for %s stopped after %d of %d rows (%d committed)",
                operation.value,
                entity_name,
                applied,
                len(rows),
                committed,
            )
            raise PartialBatchFailureError(
                entity_name=entity_name,
                operation=f"bulk_{operation.value}",
                detail=f"{committed} of {len(rows)} rows committed.",
                committed=committed,
                requested=len(rows),
                cause=exc,
            ) from exc
        return applied

    async def _apply(
        self,
        conn: AsyncConnection,
        operation: BulkOperation,
        table: sa.Table,
        row: Row,
        entity_name: str,
    ) -> int:
        if operation is BulkOperation.INSERT:
            await conn.execute(table.insert().values(**row) if row else table.insert())
            return 1
        pk = get_pk_column(table)
        if pk.name not in row or row[pk.name] is None:
            raise QueryError(
                entity_name=entity_name,
                operation=f"bulk_{operation.value}",
                detail="Row has no primary key value.",
            )
        key = row[pk.name]
        if operation is BulkOperation.DELETE:
            result = await conn.execute(table.delete().where(pk == key))
            return result.rowcount
        affected = affected_rows(await conn.execute(update_by_key(table, key, row)))
        if affected == 0:
            raise EntityNotFoundError(
                entity_name=entity_name,
                operation="bulk_update",
                detail=f"No row with key {key!r}.",
            )
        return affected
