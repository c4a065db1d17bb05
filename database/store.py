"""
SqlConfigStore — Portable SQL persistence for PostgreSQL, MySQL, SQLite.

The store owns its async engine, built from `database.url` in settings.yaml.
Plain URLs are mapped to their async driver:

  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

The version check is pushed into the UPDATE's WHERE clause, so two
writers racing on the same environment cannot both succeed.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database.models import Base, NotificationConfigRow
from database.store_base import BaseConfigStore
from models.errors import VersionConflictError
from models.schemas import Environment, NotificationConfig

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}


def async_database_url(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    return f"{ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


class SqlConfigStore(BaseConfigStore):
    """
    Persistent config store backed by any SQLAlchemy-supported database.
    `open()` creates the config table; `close()` releases pooled connections.
    """

    def __init__(self, url: str):
        self.url = async_database_url(url)
        if self.url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
        else:
            kwargs = {"pool_pre_ping": True, "pool_recycle": 1800}
        self._engine = create_async_engine(self.url, **kwargs)
        self._sessions = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)

    async def open(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("config_table_ready",
                    dialect=self._engine.dialect.name,
                    table=NotificationConfigRow.__tablename__)

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("config_store_closed", dialect=self._engine.dialect.name)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def get(self, environment: Environment) -> Optional[NotificationConfig]:
        env = Environment.parse(environment)
        async with self._session() as db:
            row = await db.get(NotificationConfigRow, env.value)
            return NotificationConfig.model_validate(row.to_dict()) if row else None

    async def put(
        self,
        environment: Environment,
        config: NotificationConfig,
        expected_version: Optional[int] = None,
    ) -> NotificationConfig:
        env = Environment.parse(environment)
        payload = config.to_dict()
        payload.pop("version", None)

        async with self._session() as db:
            row = await db.get(NotificationConfigRow, env.value)
            current = row.version if row else 0
            if expected_version is not None and expected_version != current:
                raise VersionConflictError(expected=expected_version, actual=current)

            version = current + 1
            if row is None:
                db.add(NotificationConfigRow(environment=env.value, version=version, payload=payload))
                try:
                    await db.flush()
                except IntegrityError:
                    raise VersionConflictError(expected=current, actual=current + 1)
            else:
                result = await db.execute(
                    update(NotificationConfigRow)
                    .where(NotificationConfigRow.environment == env.value)
                    .where(NotificationConfigRow.version == current)
                    .values(version=version, payload=payload)
                )
                if result.rowcount != 1:
                    raise VersionConflictError(expected=current, actual=current + 1)

        logger.info("config_stored", environment=env.value, version=version, backend="sql")
        return config.model_copy(update={"version": version})
