"""Project raw query results as JSON text."""

from __future__ import annotations

from collections.abc import Sequence

from pydantic_core import to_json

from genrepo.gateway import RAW_COMMAND, CommandType, DbParameter, ExecutionGateway, Row


def rows_to_json(rows: Sequence[Row]) -> str:
    """Serialize rows to a JSON array of objects, keeping each row's column order.

    Datetimes, UUIDs and decimals are rendered as strings; bytes as base64.
    """
    return to_json(list(rows), bytes_mode="base64").decode("utf-8")


async def query_and_return_json(
    gateway: ExecutionGateway,
    command_text: str,
    command_type: CommandType = CommandType.TEXT,
    parameters: Sequence[DbParameter] = (),
    *,
    entity_name: str = RAW_COMMAND,
) -> str:
    """Execute *command_text* and return the full result set as JSON.

    An empty result yields ``"[]"``. Execution errors propagate.
    """
    rows = await gateway.query(command_text, command_type, parameters, entity_name=entity_name)
    return rows_to_json(rows)
