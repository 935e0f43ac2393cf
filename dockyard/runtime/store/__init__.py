"""Persistence gateway implementations."""

from dockyard.runtime.store.base import PersistenceGateway
from dockyard.runtime.store.memory import InMemoryGateway
from dockyard.runtime.store.sql import SqlGateway

__all__ = ["InMemoryGateway", "PersistenceGateway", "SqlGateway"]
