"""Repository routing: maps entity models to configured repositories."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from genrepo.cache import CacheAdapter
from genrepo.connections import ConnectionManager
from genrepo.repository import SQLRepository
from genrepo.schema import EntitySchema


class RepositoryRegistry:
    """Builds and caches one repository per entity model.

    Each registered model is bound to a connection profile; the registry
    resolves the engine through the connection manager on first use.
    """

    def __init__(self, connection_manager: ConnectionManager) -> None:
        self._connection_manager = connection_manager
        self._registrations: dict[type[BaseModel], tuple[EntitySchema | None, str, CacheAdapter | None]] = {}
        self._repositories: dict[type[BaseModel], SQLRepository[Any, Any]] = {}

    def register(
        self,
        model: type[BaseModel],
        *,
        schema: EntitySchema | None = None,
        profile: str = "default",
        cache: CacheAdapter | None = None,
    ) -> None:
        """Bind *model* to a connection profile. Re-registering drops any built repository."""
        self._registrations[model] = (schema, profile, cache)
        self._repositories.pop(model, None)

    def override(self, model: type[BaseModel], repository: SQLRepository[Any, Any]) -> None:
        """Use a pre-built repository for *model*."""
        self._repositories[model] = repository

    def get(self, model: type[BaseModel]) -> SQLRepository[Any, Any]:
        """Resolve the repository for *model*.

        Raises:
            KeyError: If the model was never registered or its profile does not exist.
        """
        if model in self._repositories:
            return self._repositories[model]
        if model not in self._registrations:
            raise KeyError(f"Model '{model.__name__}' is not registered.")
        schema, profile, cache = self._registrations[model]
        engine = self._connection_manager.get_engine(profile)
        repository: SQLRepository[Any, Any] = SQLRepository(engine, model, schema=schema, cache=cache)
        self._repositories[model] = repository
        return repository
