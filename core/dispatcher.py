"""
Scheduling Dispatcher — Turns a billing lifecycle event into notification jobs.

Flow for one event:
  billing context → TriggerResolver (rules + conditions)
    → per rule: template lookup, optional payment link
    → OffsetScheduler (fire times from the anchor)
    → TemplateRenderer → ScheduledJob → queue
    (or channel.send_now when forced and already due)

The dispatcher never retries; collaborators do their own retrying.
A failing rule or job is logged and skipped, the rest of the batch
still runs, and only the aggregate count is returned.
"""
from __future__ import annotations

import copy
import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from backend.connector import BillingConnector
from channels.base import ChannelAdapter, ChannelError
from config.settings import Settings, get_settings
from core.offsets import OffsetScheduler
from database.store_base import BaseConfigStore
from job_queue.message_queue import NotificationQueue
from models.errors import ConfigValidationError, NotFoundError, NotificationError
from models.schemas import (
    Environment, NotificationConfig, PaymentStatus, Rule, ScheduleResult, ScheduledJob, Trigger,
)
from rules.engine import TriggerResolver
from templates.renderer import TemplateRenderer

logger = structlog.get_logger()

PAYMENT_STATUS_TRIGGERS = {
    PaymentStatus.APPROVED: Trigger.PAYMENT_APPROVED,
    PaymentStatus.DECLINED: Trigger.PAYMENT_DECLINED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulingDispatcher:
    """
    Collaborators are injected so tests can swap in mocks; anything not
    given is built from settings by the caller (see api.main).
    """

    def __init__(
        self,
        store: BaseConfigStore,
        billing: BillingConnector,
        queue: NotificationQueue,
        channel: ChannelAdapter,
        renderer: TemplateRenderer = None,
        scheduler: OffsetScheduler = None,
        settings: Settings = None,
        clock: Callable[[], datetime] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.billing = billing
        self.queue = queue
        self.channel = channel
        self.resolver = TriggerResolver(store)
        self.renderer = renderer or TemplateRenderer(strict=self.settings.notifications.strict_rendering)
        self.scheduler = scheduler or OffsetScheduler(dedupe=self.settings.notifications.dedupe_fire_times)
        self.clock = clock or _utcnow

    def _environment(self, environment: Any) -> Environment:
        if environment is None or environment == "":
            environment = self.settings.notifications.active_environment
        return Environment.parse(environment)

    # ══════════════════════════════════════════════════════════
    #  SUBSCRIPTION DUE
    # ══════════════════════════════════════════════════════════

    async def schedule_for_subscription(
        self,
        subscription_id: str,
        environment: Any = None,
        force_now: bool = False,
    ) -> ScheduleResult:
        subscription_id = str(subscription_id or "").strip()
        if not subscription_id:
            raise ConfigValidationError("missing_fields", "subscriptionId is required")
        env = self._environment(environment)

        sub = await self.billing.get_subscription_context(subscription_id)
        if sub is None:
            raise NotFoundError("subscription_not_found", f"subscription '{subscription_id}' does not exist")

        context = sub.to_context()
        config = await self.resolver.load(env)
        rules = self.resolver.resolve_in(config, Trigger.SUBSCRIPTION_DUE, context, environment=env.value)

        count = await self._emit(
            env, Trigger.SUBSCRIPTION_DUE, config, rules, context,
            anchor=sub.due_date,
            subscription_id=subscription_id,
            force_now=force_now,
        )
        logger.info("subscription_scheduled",
                    subscription_id=subscription_id,
                    environment=env.value,
                    rules=len(rules),
                    scheduled=count,
                    force_now=force_now)
        return ScheduleResult(scheduled_count=count)

    # ══════════════════════════════════════════════════════════
    #  PAYMENT EVENTS
    # ══════════════════════════════════════════════════════════

    async def schedule_for_payment(
        self,
        payment_id: str,
        environment: Any = None,
        force_now: bool = False,
        trigger: Optional[Trigger] = None,
    ) -> ScheduleResult:
        """
        Without `trigger`, the payment's status picks it: APPROVED and
        DECLINED map to their triggers, any other status schedules nothing.
        """
        payment_id = str(payment_id or "").strip()
        if not payment_id:
            raise ConfigValidationError("missing_fields", "paymentId is required")
        env = self._environment(environment)

        payment = await self.billing.get_payment_context(payment_id)
        if payment is None:
            raise NotFoundError("payment_not_found", f"payment '{payment_id}' does not exist")

        if trigger is None:
            trigger = PAYMENT_STATUS_TRIGGERS.get(payment.status)
            if trigger is None:
                logger.info("payment_status_not_notifiable", payment_id=payment_id, status=payment.status.value)
                return ScheduleResult(scheduled_count=0)

        context = payment.to_context()
        config = await self.resolver.load(env)
        rules = self.resolver.resolve_in(config, trigger, context, environment=env.value)

        count = await self._emit(
            env, trigger, config, rules, context,
            anchor=self.clock(),
            subscription_id=payment.subscription_id,
            payment_id=payment_id,
            force_now=force_now,
        )
        logger.info("payment_scheduled",
                    payment_id=payment_id,
                    trigger=trigger.value,
                    environment=env.value,
                    scheduled=count)
        return ScheduleResult(scheduled_count=count)

    async def schedule_for_payment_link(
        self,
        payment_id: str,
        environment: Any = None,
        force_now: bool = False,
    ) -> ScheduleResult:
        return await self.schedule_for_payment(
            payment_id, environment, force_now, trigger=Trigger.PAYMENT_LINK_CREATED,
        )

    # ══════════════════════════════════════════════════════════
    #  JOB EMISSION
    # ══════════════════════════════════════════════════════════

    async def _emit(
        self,
        env: Environment,
        trigger: Trigger,
        config: NotificationConfig,
        rules: list[Rule],
        context: dict[str, Any],
        anchor: datetime,
        subscription_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        force_now: bool = False,
    ) -> int:
        count = 0
        for rule in rules:
            template = config.get_template(rule.template_id)
            if template is None:
                logger.warning("rule_template_missing", rule_id=rule.id, template_id=rule.template_id)
                continue

            rule_context = copy.deepcopy(context)
            if rule.ensure_payment_link and subscription_id:
                await self._attach_payment_link(rule, subscription_id, rule_context)

            try:
                planned = self.scheduler.plan(anchor, rule.offsets_seconds, rule.at_time_utc)
            except NotificationError as e:
                logger.error("fire_time_failed", rule_id=rule.id, error=str(e))
                continue

            if not self.renderer.strict:
                missing = self.renderer.missing_variables(template, rule_context)
                if missing:
                    logger.warning("template_variables_missing", template_id=template.id, missing=missing)

            for offset, fire_at in planned:
                try:
                    rendered = self.renderer.render(template, rule_context)
                    job = ScheduledJob(
                        environment=env,
                        trigger=trigger,
                        subscription_id=subscription_id,
                        payment_id=payment_id,
                        rule_id=rule.id,
                        template_id=template.id,
                        offset_seconds=offset,
                        anchor_at=anchor,
                        fire_at=fire_at,
                        rendered_payload=rendered,
                        recipient=dict(rule_context.get("customer") or {}),
                    )
                    if force_now and fire_at <= self.clock():
                        await self.channel.send_now(job.rendered_payload, job.recipient)
                        logger.info("job_sent_now", job_id=job.job_id, rule_id=rule.id)
                    else:
                        await self.queue.enqueue(job)
                    count += 1
                except (NotificationError, ChannelError) as e:
                    logger.error("job_emit_failed", rule_id=rule.id, fire_at=fire_at.isoformat(), error=str(e))
                except Exception as e:
                    logger.error("job_emit_failed", rule_id=rule.id, fire_at=fire_at.isoformat(),
                                 error=str(e), error_type=type(e).__name__)
        return count

    async def _attach_payment_link(self, rule: Rule, subscription_id: str, context: dict[str, Any]):
        """Merge a checkout URL into payment.checkoutUrl; on failure the rule goes on without it."""
        try:
            link = await self.billing.ensure_payment_link(subscription_id)
        except Exception as e:
            logger.warning("payment_link_failed", rule_id=rule.id, subscription_id=subscription_id, error=str(e))
            return
        payment = context.setdefault("payment", {})
        payment["checkoutUrl"] = link.get("checkout_url")
        if link.get("payment_id"):
            payment.setdefault("id", link["payment_id"])
        logger.info("payment_link_attached", rule_id=rule.id, subscription_id=subscription_id)
