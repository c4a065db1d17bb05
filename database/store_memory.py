"""
InMemoryConfigStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlConfigStore
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from database.store_base import BaseConfigStore
from models.schemas import Environment, NotificationConfig

logger = structlog.get_logger()


class InMemoryConfigStore(BaseConfigStore):
    """
    Keeps one serialized blob per environment.
    Blobs are stored as dicts so callers never share mutable model instances.
    """

    def __init__(self):
        self._blobs: dict[str, dict[str, Any]] = {}    # environment → config dict
        logger.info("inmemory_config_store_initialized")

    async def get(self, environment: Environment) -> Optional[NotificationConfig]:
        env = Environment.parse(environment)
        raw = self._blobs.get(env.value)
        return NotificationConfig.model_validate(raw) if raw is not None else None

    async def put(
        self,
        environment: Environment,
        config: NotificationConfig,
        expected_version: Optional[int] = None,
    ) -> NotificationConfig:
        env = Environment.parse(environment)
        current = await self.get(env)
        version = self._next_version(current, expected_version)
        stored = config.model_copy(update={"version": version})
        self._blobs[env.value] = stored.to_dict()
        logger.info("config_stored",
                    environment=env.value,
                    version=version,
                    templates=len(stored.templates),
                    rules=len(stored.rules))
        return stored
