"""Shared fixtures for genrepo tests."""

from __future__ import annotations

import uuid

import pytest
from genrepo.adapters.sql import enable_sqlite_savepoints
from genrepo.repository import SQLRepository
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import create_async_engine


class Customer(BaseModel):
    id: int | None = None
    name: str
    email: str = Field(json_schema_extra={"unique": True})
    city: str | None = None


class Token(BaseModel):
    id: uuid.UUID | None = None
    label: str


class Tag(BaseModel):
    id: str | None = None
    label: str


@pytest.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    enable_sqlite_savepoints(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def customers(engine) -> SQLRepository[Customer, int]:
    repo: SQLRepository[Customer, int] = SQLRepository(engine, Customer)
    await repo.ensure_table()
    return repo


@pytest.fixture
async def tokens(engine) -> SQLRepository[Token, uuid.UUID]:
    repo: SQLRepository[Token, uuid.UUID] = SQLRepository(engine, Token)
    await repo.ensure_table()
    return repo


@pytest.fixture
async def tags(engine) -> SQLRepository[Tag, str]:
    repo: SQLRepository[Tag, str] = SQLRepository(engine, Tag)
    await repo.ensure_table()
    return repo
