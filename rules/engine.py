"""
Trigger Resolver — Selects the rules that fire for a lifecycle event.

Rules are read from the environment's config blob on every call, so an
admin change takes effect on the next scheduling run without a reload.
A rule matches when it is enabled, its trigger equals the event's
trigger and its conditions pass against the event context.
"""
from __future__ import annotations

import structlog
from typing import Any

from database.store_base import BaseConfigStore
from models.schemas import Environment, NotificationConfig, Rule, Trigger
from utils.conditions import passes

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Trigger Resolver
# ──────────────────────────────────────────────────────────────

class TriggerResolver:

    def __init__(self, store: BaseConfigStore):
        self.store = store

    async def load(self, environment: Any) -> NotificationConfig:
        return await self.store.get_or_default(Environment.parse(environment))

    async def resolve(self, environment: Any, trigger: Trigger, context: dict[str, Any]) -> list[Rule]:
        config = await self.load(environment)
        return self.resolve_in(config, trigger, context, environment=Environment.parse(environment).value)

    def resolve_in(
        self,
        config: NotificationConfig,
        trigger: Trigger,
        context: dict[str, Any],
        environment: Any = None,
    ) -> list[Rule]:
        """Matching rules in declaration order, each at most once."""
        matched: list[Rule] = []
        seen: set[str] = set()

        for rule in config.rules:
            if rule.trigger != trigger or rule.id in seen:
                continue
            if not passes(rule, context):
                logger.debug("rule_skipped", rule_id=rule.id, enabled=rule.enabled)
                continue
            seen.add(rule.id)
            matched.append(rule)
            logger.info("rule_matched", rule_id=rule.id, trigger=trigger.value)

        if not matched:
            logger.warning("no_active_rules",
                           environment=str(environment) if environment is not None else None,
                           trigger=trigger.value)
        return matched
