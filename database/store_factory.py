"""Pick the config store backend named by `database.store_backend`."""
from __future__ import annotations

import structlog

from config.settings import DatabaseConfig
from database.store_base import BaseConfigStore

logger = structlog.get_logger()


def create_store(db: DatabaseConfig = None) -> BaseConfigStore:
    """
    "sql" stores configs in the database at `db.url`, "file" in JSON files
    under `db.store_file_dir`; anything else gets a process-local memory store.
    Call `open()` on the result before first use.
    """
    db = db or DatabaseConfig()

    if db.store_backend == "sql":
        from database.store import SqlConfigStore
        store = SqlConfigStore(db.url)
    elif db.store_backend == "file":
        from database.store_file import FileConfigStore
        store = FileConfigStore(data_dir=db.store_file_dir)
    else:
        from database.store_memory import InMemoryConfigStore
        store = InMemoryConfigStore()

    logger.info("config_store_created", backend=db.store_backend, store=type(store).__name__)
    return store
