"""Tests for JSON projection of raw query results."""

import datetime as dt
import json
import uuid

import pytest
from genrepo.adapters.sql import SQLAlchemyGateway
from genrepo.exceptions import ExecutionFailureError
from genrepo.gateway import DbParameter
from genrepo.projection import query_and_return_json, rows_to_json


def test_rows_to_json_keeps_column_order():
    text = rows_to_json([{"b": 2, "a": 1}, {"b": 4, "a": 3}])
    assert text == '[{"b":2,"a":1},{"b":4,"a":3}]'


def test_rows_to_json_empty():
    assert rows_to_json([]) == "[]"


def test_rows_to_json_renders_rich_values():
    key = uuid.UUID("12345678-1234-5678-1234-567812345678")
    text = rows_to_json([{"id": key, "at": dt.datetime(2024, 1, 2, 3, 4, 5), "blob": b"abc", "missing": None}])
    assert json.loads(text) == [
        {"id": "12345678-1234-5678-1234-567812345678", "at": "2024-01-02T03:04:05", "blob": "YWJj", "missing": None}
    ]


async def test_query_and_return_json(engine):
    gateway = SQLAlchemyGateway(engine)
    text = await query_and_return_json(gateway, "SELECT :n AS n, 'x' AS label", parameters=[DbParameter("n", 5)])
    assert text == '[{"n":5,"label":"x"}]'


async def test_query_and_return_json_empty_result(engine):
    gateway = SQLAlchemyGateway(engine)
    await gateway.execute("CREATE TABLE t (id INTEGER PRIMARY KEY)")
    assert await query_and_return_json(gateway, "SELECT id FROM t") == "[]"


async def test_query_and_return_json_propagates_errors(engine):
    with pytest.raises(ExecutionFailureError):
        await query_and_return_json(SQLAlchemyGateway(engine), "SELECT * FROM no_such_table")


async def test_query_and_return_json_keeps_joined_columns_sharing_a_name(engine):
    gateway = SQLAlchemyGateway(engine)
    await gateway.execute("CREATE TABLE item (id INTEGER PRIMARY KEY, sku VARCHAR(20))")
    await gateway.execute("CREATE TABLE bin (id INTEGER PRIMARY KEY, item_id INTEGER)")
    await gateway.execute("INSERT INTO item (id, sku) VALUES (1, 'A-1')")
    await gateway.execute("INSERT INTO bin (id, item_id) VALUES (9, 1)")
    text = await query_and_return_json(
        gateway, "SELECT item.id, item.sku, bin.id FROM item JOIN bin ON bin.item_id = item.id"
    )
    assert text == '[{"id":1,"sku":"A-1","id_1":9}]'
