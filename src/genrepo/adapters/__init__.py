"""Execution gateway implementations."""

from genrepo.adapters.sql import SQLAlchemyGateway

__all__ = ["SQLAlchemyGateway"]
