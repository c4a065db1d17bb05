"""
Abstract Config Store — Interface for all notification config backends.

Implementations:
  - SqlConfigStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryConfigStore (dict-based, single-process, no persistence)
  - FileConfigStore     (JSON files on disk, single-process, durable)

Each environment owns exactly one NotificationConfig blob. Writes replace
the whole blob; there is no partial patch primitive. A writer may pass the
version it read as `expected_version` and the store rejects the write with
VersionConflictError if someone else wrote in between.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.errors import VersionConflictError
from models.schemas import Environment, NotificationConfig


class BaseConfigStore(ABC):
    """Interface that all config store backends must implement."""

    @abstractmethod
    async def get(self, environment: Environment) -> Optional[NotificationConfig]:
        """Return the environment's config, or None if it was never written."""
        ...

    @abstractmethod
    async def put(
        self,
        environment: Environment,
        config: NotificationConfig,
        expected_version: Optional[int] = None,
    ) -> NotificationConfig:
        """Replace the environment's config. Returns the stored copy with its new version."""
        ...

    async def open(self) -> None:
        """Prepare backend resources (tables, pools). Nothing to do by default."""

    async def close(self) -> None:
        """Release backend resources."""

    async def get_or_default(self, environment: Environment) -> NotificationConfig:
        return await self.get(environment) or NotificationConfig()

    @staticmethod
    def _next_version(current: Optional[NotificationConfig], expected_version: Optional[int]) -> int:
        """Validate `expected_version` against what is stored and return the version to write."""
        actual = current.version if current else 0
        if expected_version is not None and expected_version != actual:
            raise VersionConflictError(expected=expected_version, actual=actual)
        return actual + 1
