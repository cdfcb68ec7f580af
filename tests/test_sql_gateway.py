"""Tests for the SQLAlchemy execution gateway using async SQLite."""

import pytest
import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.dialects import mssql, sqlite
from sqlalchemy.exc import OperationalError
from genrepo.adapters.sql import SQLAlchemyGateway, _prepare, build_table, column_names, compile_criteria
from genrepo.criteria import Predicate, PrimaryKey
from genrepo.exceptions import (
    EntityNotFoundError,
    ExecutionFailureError,
    IntegrityViolationError,
    PartialBatchFailureError,
    QueryError,
    TransactionError,
)
from genrepo.gateway import BulkOperation, CommandType, DbParameter, ExecutionGateway, ParameterDirection
from genrepo.schema import EntitySchema, FieldSchema, FieldType

ITEM = EntitySchema(
    name="Item",
    fields=[
        FieldSchema(name="id", field_type=FieldType.INTEGER, primary_key=True),
        FieldSchema(name="sku", field_type=FieldType.STRING, unique=True),
        FieldSchema(name="qty", field_type=FieldType.INTEGER, nullable=True),
    ],
)


@pytest.fixture
async def gateway(engine):
    gw = SQLAlchemyGateway(engine)
    await gw.execute("CREATE TABLE item (id INTEGER PRIMARY KEY, sku VARCHAR(255) UNIQUE NOT NULL, qty INTEGER)")
    return gw


@pytest.fixture
def table() -> sa.Table:
    return build_table(ITEM, sa.MetaData())


def test_gateway_satisfies_protocol(engine):
    assert isinstance(SQLAlchemyGateway(engine), ExecutionGateway)


async def test_execute_returns_rows_affected(gateway: SQLAlchemyGateway):
    inserted = await gateway.execute(
        "INSERT INTO item (sku, qty) VALUES (:sku, :qty)",
        CommandType.TEXT,
        [DbParameter("@sku", "A-1"), DbParameter(":qty", 3)],
    )
    assert inserted == 1

    updated = await gateway.execute("UPDATE item SET qty = qty + 1")
    assert updated == 1


async def test_query_preserves_column_order(gateway: SQLAlchemyGateway):
    await gateway.execute("INSERT INTO item (sku, qty) VALUES ('A-1', 3)")
    rows = await gateway.query("SELECT qty, sku, id FROM item")
    assert rows == [{"qty": 3, "sku": "A-1", "id": 1}]
    assert list(rows[0]) == ["qty", "sku", "id"]


async def test_scalar(gateway: SQLAlchemyGateway):
    assert await gateway.scalar("SELECT COUNT(*) FROM item") == 0
    assert await gateway.scalar("SELECT qty FROM item") is None


async def test_table_direct_selects_whole_table(gateway: SQLAlchemyGateway):
    await gateway.execute("INSERT INTO item (sku, qty) VALUES ('A-1', 3), ('B-2', 5)")
    rows = await gateway.query("item", CommandType.TABLE_DIRECT)
    assert sorted(r["sku"] for r in rows) == ["A-1", "B-2"]


async def test_invalid_object_name_rejected(gateway: SQLAlchemyGateway):
    with pytest.raises(QueryError, match="not a valid table_direct name"):
        await gateway.query("item; DROP TABLE item", CommandType.TABLE_DIRECT)
    with pytest.raises(QueryError, match="not a valid stored_procedure name"):
        await gateway.execute("proc()", CommandType.STORED_PROCEDURE)


async def test_stored_procedure_surfaces_execution_failure_on_sqlite(gateway: SQLAlchemyGateway):
    """SQLite has no CALL statement, so the failure is translated, not swallowed."""
    with pytest.raises(ExecutionFailureError):
        await gateway.execute("refresh_totals", CommandType.STORED_PROCEDURE, [DbParameter("since", 1)])


@pytest.mark.parametrize("direction", [ParameterDirection.OUT, ParameterDirection.RETURN_VALUE])
async def test_output_parameters_rejected(gateway: SQLAlchemyGateway, direction):
    with pytest.raises(QueryError, match="not supported"):
        await gateway.execute("SELECT 1", CommandType.TEXT, [DbParameter("result", direction=direction)])


async def test_in_out_parameter_binds_value(gateway: SQLAlchemyGateway):
    value = await gateway.scalar("SELECT :x + 1", CommandType.TEXT, [DbParameter("x", 41, ParameterDirection.IN_OUT)])
    assert value == 42


async def test_syntax_error_translated(gateway: SQLAlchemyGateway):
    with pytest.raises(ExecutionFailureError) as exc_info:
        await gateway.query("SELEKT * FROM item")
    assert exc_info.value.__cause__ is not None
    assert "sqlite" not in str(exc_info.value).lower()
    assert "memory" not in str(exc_info.value).lower()


async def test_integrity_error_translated(gateway: SQLAlchemyGateway):
    await gateway.execute("INSERT INTO item (sku) VALUES ('A-1')")
    with pytest.raises(IntegrityViolationError) as exc_info:
        await gateway.execute("INSERT INTO item (sku) VALUES ('A-1')")
    assert exc_info.value.operation == "execute"


async def test_reader_streams_rows(gateway: SQLAlchemyGateway):
    await gateway.execute("INSERT INTO item (sku, qty) VALUES ('A-1', 1), ('B-2', 2), ('C-3', 3)")
    seen = []
    async with gateway.reader("SELECT sku, qty FROM item ORDER BY qty") as rows:
        async for row in rows:
            seen.append(row)
    assert seen == [{"sku": "A-1", "qty": 1}, {"sku": "B-2", "qty": 2}, {"sku": "C-3", "qty": 3}]


async def test_insert_returns_generated_key(gateway: SQLAlchemyGateway, table: sa.Table):
    first = await gateway.insert(table, {"sku": "A-1", "qty": 1})
    second = await gateway.insert(table, {"sku": "B-2", "qty": 2})
    assert (first, second) == (1, 2)


async def test_bulk_insert_counts_rows(gateway: SQLAlchemyGateway, table: sa.Table):
    count = await gateway.bulk_write(BulkOperation.INSERT, table, [{"sku": "A-1"}, {"sku": "B-2"}])
    assert count == 2
    assert await gateway.scalar("SELECT COUNT(*) FROM item") == 2


async def test_bulk_write_empty_batch(gateway: SQLAlchemyGateway, table: sa.Table):
    assert await gateway.bulk_write(BulkOperation.DELETE, table, []) == 0


async def test_bulk_insert_failure_rolls_back_whole_batch(gateway: SQLAlchemyGateway, table: sa.Table):
    with pytest.raises(PartialBatchFailureError) as exc_info:
        await gateway.bulk_write(BulkOperation.INSERT, table, [{"sku": "A-1"}, {"sku": "A-1"}])
    assert exc_info.value.committed == 0
    assert exc_info.value.requested == 2
    assert isinstance(exc_info.value.__cause__, IntegrityViolationError)
    assert await gateway.scalar("SELECT COUNT(*) FROM item") == 0


async def test_bulk_update_missing_row_fails_batch(gateway: SQLAlchemyGateway, table: sa.Table):
    await gateway.insert(table, {"sku": "A-1", "qty": 1})
    with pytest.raises(PartialBatchFailureError) as exc_info:
        await gateway.bulk_write(
            BulkOperation.UPDATE,
            table,
            [{"id": 1, "sku": "A-1", "qty": 10}, {"id": 99, "sku": "Z-9", "qty": 0}],
        )
    assert exc_info.value.committed == 0
    assert isinstance(exc_info.value.__cause__, EntityNotFoundError)
    assert await gateway.scalar("SELECT qty FROM item WHERE id = 1") == 1


async def test_bulk_delete_counts_only_existing_rows(gateway: SQLAlchemyGateway, table: sa.Table):
    await gateway.insert(table, {"sku": "A-1"})
    count = await gateway.bulk_write(BulkOperation.DELETE, table, [{"id": 1}, {"id": 2}])
    assert count == 1


async def test_bulk_write_in_borrowed_transaction_reports_applied_rows(engine, gateway, table):
    async with engine.connect() as conn:
        await conn.begin()
        with pytest.raises(PartialBatchFailureError) as exc_info:
            await gateway.bulk_write(
                BulkOperation.INSERT, table, [{"sku": "A-1"}, {"sku": "A-1"}], connection=conn
            )
        assert exc_info.value.committed == 1
        # Only the failed row was undone; the transaction is still usable.
        await gateway.insert(table, {"sku": "B-2"}, connection=conn)
        await conn.commit()
    assert await gateway.query("SELECT sku FROM item ORDER BY id") == [{"sku": "A-1"}, {"sku": "B-2"}]


async def test_borrowed_connection_must_be_in_transaction(engine, gateway):
    async with engine.connect() as conn:
        with pytest.raises(TransactionError, match="no active transaction"):
            await gateway.execute("SELECT 1", connection=conn)


async def test_borrowed_connection_must_be_open(engine, gateway):
    conn = await engine.connect()
    await conn.close()
    with pytest.raises(TransactionError, match="closed"):
        await gateway.execute("SELECT 1", connection=conn)


async def test_borrowed_transaction_is_not_committed(engine, gateway, table):
    async with engine.connect() as conn:
        await conn.begin()
        await gateway.insert(table, {"sku": "A-1"}, connection=conn)
        await conn.rollback()
    assert await gateway.scalar("SELECT COUNT(*) FROM item") == 0


def test_compile_criteria_unknown_field(table: sa.Table):
    with pytest.raises(QueryError, match="Unknown field 'nope'"):
        compile_criteria(Predicate.equals(nope=1), table, "id", entity_name="Item")


def test_compile_criteria_variants(table: sa.Table):
    pk_clause = compile_criteria(PrimaryKey(7), table, "id", entity_name="Item")
    assert "item.id = :id_1" in str(pk_clause)

    everything = compile_criteria(Predicate(), table, "id", entity_name="Item")
    assert str(everything) == "true"

    null_check = compile_criteria(Predicate.equals(qty=None), table, "id", entity_name="Item")
    assert "IS NULL" in str(null_check)


async def test_query_keeps_columns_sharing_a_name(gateway: SQLAlchemyGateway):
    await gateway.execute("CREATE TABLE bin (id INTEGER PRIMARY KEY, item_id INTEGER, label VARCHAR(20))")
    await gateway.execute("INSERT INTO item (id, sku) VALUES (1, 'A-1')")
    await gateway.execute("INSERT INTO bin (id, item_id, label) VALUES (7, 1, 'top')")

    sql = "SELECT item.id, bin.id, bin.label FROM item JOIN bin ON bin.item_id = item.id"
    rows = await gateway.query(sql)
    assert rows == [{"id": 1, "id_1": 7, "label": "top"}]
    assert list(rows[0]) == ["id", "id_1", "label"]

    async with gateway.reader(sql) as streamed:
        assert [row async for row in streamed] == rows


def test_column_names_are_made_unique():
    assert column_names(["id", "id", "name", "id"]) == ["id", "id_1", "name", "id_2"]
    assert column_names(["id", "id_1", "id"]) == ["id", "id_1", "id_2"]


def test_stored_procedure_statement_follows_dialect():
    params = [DbParameter("@since", 1), DbParameter("region", "EU")]

    stmt, bound = _prepare("dbo.refresh_totals", CommandType.STORED_PROCEDURE, params, "Item", "mssql")
    assert bound == {"since": 1, "region": "EU"}
    assert str(stmt.compile(dialect=mssql.dialect())) == "EXEC dbo.refresh_totals @since = ?, @region = ?"

    stmt, _ = _prepare("refresh_totals", CommandType.STORED_PROCEDURE, params, "Item", "sqlite")
    assert str(stmt.compile(dialect=sqlite.dialect())) == "CALL refresh_totals(?, ?)"


def test_stored_procedure_without_parameters_on_mssql():
    stmt, bound = _prepare("dbo.nightly", CommandType.STORED_PROCEDURE, [], "Item", "mssql")
    assert str(stmt) == "EXEC dbo.nightly"
    assert bound is None


async def test_bulk_update_of_key_only_rows(gateway: SQLAlchemyGateway):
    key_only = sa.Table("item", sa.MetaData(), sa.Column("id", sa.Integer, primary_key=True))
    await gateway.execute("INSERT INTO item (id, sku) VALUES (1, 'A-1')")

    assert await gateway.bulk_write(BulkOperation.UPDATE, key_only, [{"id": 1}]) == 1
    with pytest.raises(PartialBatchFailureError) as exc_info:
        await gateway.bulk_write(BulkOperation.UPDATE, key_only, [{"id": 1}, {"id": 2}])
    assert isinstance(exc_info.value.__cause__, EntityNotFoundError)


async def test_commit_failure_raises_transaction_error(engine, gateway: SQLAlchemyGateway):
    def fail_commit(conn):
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    event.listen(engine.sync_engine, "commit", fail_commit)
    try:
        with pytest.raises(TransactionError) as exc_info:
            await gateway.execute("INSERT INTO item (sku) VALUES ('A-1')")
    finally:
        event.remove(engine.sync_engine, "commit", fail_commit)
    assert exc_info.value.operation == "transaction"
    assert isinstance(exc_info.value.__cause__, OperationalError)
    assert await gateway.scalar("SELECT COUNT(*) FROM item") == 0
