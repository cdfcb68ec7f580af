"""genrepo: generic repository layer over an async SQL execution gateway."""

from genrepo.adapters.sql import SQLAlchemyGateway
from genrepo.cache import CacheAdapter, CacheEntry, MemoryCacheAdapter
from genrepo.connections import ConnectionManager, ConnectionProfile, InvalidConnectionURL
from genrepo.criteria import (
    ALL,
    Condition,
    Criteria,
    Direction,
    Field,
    Operator,
    OrderField,
    Predicate,
    PrimaryKey,
    as_criteria,
)
from genrepo.exceptions import (
    AmbiguousMatchError,
    ConnectionFailedError,
    EntityNotFoundError,
    ExecutionFailureError,
    IntegrityViolationError,
    PartialBatchFailureError,
    PersistenceError,
    QueryError,
    TransactionError,
)
from genrepo.gateway import BulkOperation, CommandType, DbParameter, ExecutionGateway, ParameterDirection
from genrepo.projection import query_and_return_json
from genrepo.protocols import JsonReadRepository, ReadRepository, WriteRepository
from genrepo.registry import RepositoryRegistry
from genrepo.repository import SQLRepository
from genrepo.schema import EntitySchema, FieldSchema, FieldType

__all__ = [
    "ALL",
    "AmbiguousMatchError",
    "BulkOperation",
    "CacheAdapter",
    "CacheEntry",
    "CommandType",
    "Condition",
    "ConnectionFailedError",
    "ConnectionManager",
    "ConnectionProfile",
    "Criteria",
    "DbParameter",
    "Direction",
    "EntityNotFoundError",
    "EntitySchema",
    "ExecutionFailureError",
    "ExecutionGateway",
    "Field",
    "FieldSchema",
    "FieldType",
    "IntegrityViolationError",
    "InvalidConnectionURL",
    "JsonReadRepository",
    "MemoryCacheAdapter",
    "Operator",
    "OrderField",
    "ParameterDirection",
    "PartialBatchFailureError",
    "PersistenceError",
    "Predicate",
    "PrimaryKey",
    "QueryError",
    "ReadRepository",
    "RepositoryRegistry",
    "SQLAlchemyGateway",
    "SQLRepository",
    "TransactionError",
    "WriteRepository",
    "as_criteria",
    "query_and_return_json",
]
