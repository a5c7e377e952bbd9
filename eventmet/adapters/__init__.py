"""Adapters for integrating EventMet with storage and frameworks."""

from .memory_repo import InMemoryEventRepository
from .sqlalchemy_repo import SQLAlchemyEventRepository, create_schema

__all__ = ["InMemoryEventRepository", "SQLAlchemyEventRepository", "create_schema"]
