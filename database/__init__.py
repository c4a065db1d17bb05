"""
Database layer — Multi-backend persistence for notification configs.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store(settings.database)
  await store.open()
  config = await store.get(Environment.PRODUCTION)
"""
from database.models import Base, NotificationConfigRow
from database.store_base import BaseConfigStore
from database.store import SqlConfigStore
from database.store_memory import InMemoryConfigStore
from database.store_file import FileConfigStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "NotificationConfigRow",
    # Store interface
    "BaseConfigStore",
    # Store backends
    "SqlConfigStore", "InMemoryConfigStore", "FileConfigStore",
    # Factory
    "create_store",
]
