"""Tests for the repository registry."""

import pytest
from conftest import Customer, Tag
from genrepo.cache import MemoryCacheAdapter
from genrepo.connections import ConnectionManager, ConnectionProfile
from genrepo.registry import RepositoryRegistry
from genrepo.repository import SQLRepository
from genrepo.schema import EntitySchema


@pytest.fixture
def manager() -> ConnectionManager:
    return ConnectionManager(
        profiles={
            "default": ConnectionProfile(url="sqlite+aiosqlite:///:memory:"),
            "archive": ConnectionProfile(url="sqlite+aiosqlite:///:memory:"),
        }
    )


def test_registry_builds_and_caches_repository(manager):
    registry = RepositoryRegistry(manager)
    registry.register(Customer)
    repo = registry.get(Customer)
    assert isinstance(repo, SQLRepository)
    assert repo.name == "Customer"
    assert registry.get(Customer) is repo


def test_registry_uses_profile_schema_and_cache(manager):
    registry = RepositoryRegistry(manager)
    cache = MemoryCacheAdapter()
    schema = EntitySchema.from_model(Tag, table_name="labels")
    registry.register(Tag, schema=schema, profile="archive", cache=cache)

    repo = registry.get(Tag)
    assert repo.table.name == "labels"
    assert repo.cache is cache
    assert repo.gateway.engine is manager.get_engine("archive")


def test_registry_unregistered_model():
    registry = RepositoryRegistry(ConnectionManager())
    with pytest.raises(KeyError, match="not registered"):
        registry.get(Customer)


def test_registry_missing_profile():
    registry = RepositoryRegistry(ConnectionManager())
    registry.register(Customer)
    with pytest.raises(KeyError, match="Connection profile 'default' not found"):
        registry.get(Customer)


def test_registry_override(engine):
    registry = RepositoryRegistry(ConnectionManager())
    repo = SQLRepository(engine, Customer)
    registry.override(Customer, repo)
    assert registry.get(Customer) is repo


async def test_registered_repository_round_trip(manager):
    registry = RepositoryRegistry(manager)
    registry.register(Customer)
    repo = registry.get(Customer)
    await repo.ensure_table()
    key = await repo.insert(Customer(name="Ann", email="ann@test.com"))
    assert await repo.query(key) == [Customer(id=key, name="Ann", email="ann@test.com")]
    await manager.close_all()
