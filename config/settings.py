"""
Configuration loader for the notification service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./notifier.db"         # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                  # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                 # directory for file backend


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    key: str = "notifications:scheduled"


@dataclass
class BillingConfig:
    type: str = "rest"
    base_url: str = ""
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0


@dataclass
class ChannelConfig:
    base_url: str = ""                  # empty → mock delivery
    account_id: str = ""
    inbox_id: str = ""
    api_token: str = ""
    timeout: float = 15.0


@dataclass
class NotificationsConfig:
    active_environment: str = "PRODUCTION"
    strict_rendering: bool = False
    dedupe_fire_times: bool = False


@dataclass
class Settings:
    app_name: str = "SubscriptionNotifier"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values (unset → empty)."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "NOTIFIER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug"), settings.debug)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            )

        if "queue" in raw:
            q = raw["queue"]
            settings.queue = QueueConfig(
                backend=q.get("backend", "memory"),
                redis_url=q.get("redis_url") or "redis://localhost:6379",
                key=q.get("key", settings.queue.key),
            )

        if "billing" in raw:
            be = raw["billing"]
            settings.billing = BillingConfig(
                type=be.get("type", "rest"),
                base_url=be.get("base_url", ""),
                auth_type=be.get("auth_type", "bearer"),
                auth_credentials=be.get("auth_credentials", {}),
                endpoints=be.get("endpoints", {}),
                timeout=float(be.get("timeout", 30.0)),
            )

        if "channel" in raw:
            ch = raw["channel"]
            settings.channel = ChannelConfig(
                base_url=ch.get("base_url", ""),
                account_id=str(ch.get("account_id", "")),
                inbox_id=str(ch.get("inbox_id", "")),
                api_token=ch.get("api_token", ""),
                timeout=float(ch.get("timeout", 15.0)),
            )

        if "notifications" in raw:
            n = raw["notifications"]
            settings.notifications = NotificationsConfig(
                active_environment=str(n.get("active_environment", "PRODUCTION")).strip().upper(),
                strict_rendering=_as_bool(n.get("strict_rendering"), False),
                dedupe_fire_times=_as_bool(n.get("dedupe_fire_times"), False),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
