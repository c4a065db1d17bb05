"""
FileConfigStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    notifications_PRODUCTION.json
    notifications_SANDBOX.json

Features:
  - Survives process restarts (unlike InMemoryConfigStore)
  - No external dependencies (no database server)
  - Every write flushes the environment's file via tmp + rename
  - Single-process only (no cross-process write safety)

Best for: small deployments, demos, air-gapped environments.
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from database.store_memory import InMemoryConfigStore
from models.schemas import Environment, NotificationConfig

logger = structlog.get_logger()


class FileConfigStore(InMemoryConfigStore):
    """
    Extends InMemoryConfigStore with JSON file persistence.

    On init: loads every environment file into memory.
    On every write: flushes the changed environment to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_config_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, environment: Environment) -> Path:
        return self._data_dir / f"notifications_{environment.value}.json"

    def _load_all(self):
        """Load all environments from disk. Unreadable files are skipped with a warning."""
        for env in Environment:
            path = self._file_path(env)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                NotificationConfig.model_validate(data)
                self._blobs[env.value] = data
                logger.debug("file_config_loaded", environment=env.value, version=data.get("version"))
            except (json.JSONDecodeError, ValidationError, OSError) as e:
                logger.warning("file_config_load_error", environment=env.value, error=str(e))

    def _flush(self, environment: Environment):
        path = self._file_path(environment)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._blobs[environment.value], f, indent=2, ensure_ascii=False)
        tmp_path.replace(path)  # atomic on POSIX

    # ── Override write to trigger persistence ──────────────

    async def put(
        self,
        environment: Environment,
        config: NotificationConfig,
        expected_version: Optional[int] = None,
    ) -> NotificationConfig:
        env = Environment.parse(environment)
        previous = self._blobs.get(env.value)
        stored = await super().put(env, config, expected_version)
        try:
            self._flush(env)
        except OSError as e:
            # memory must not run ahead of disk
            if previous is None:
                self._blobs.pop(env.value, None)
            else:
                self._blobs[env.value] = previous
            logger.error("file_config_flush_failed", environment=env.value, error=str(e))
            raise
        return stored
