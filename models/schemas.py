"""
Core data models for the notification engine.
These are the universal types shared across all modules.

Stored blobs use camelCase field names (the format the admin UI reads
and writes); snake_case names are accepted on input as well.
"""
from __future__ import annotations

import math
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from models.errors import ConfigValidationError


AT_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

# timedelta tops out at 999,999,999 days
MAX_OFFSET_SECONDS = 999_999_999 * 24 * 60 * 60


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Environment(str, Enum):
    PRODUCTION = "PRODUCTION"
    SANDBOX = "SANDBOX"

    @classmethod
    def parse(cls, value: Any) -> Environment:
        if isinstance(value, Environment):
            return value
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            raise ConfigValidationError(
                "invalid_environment", f"environment must be PRODUCTION or SANDBOX, got {value!r}"
            ) from None


class Trigger(str, Enum):
    SUBSCRIPTION_DUE = "SUBSCRIPTION_DUE"
    PAYMENT_LINK_CREATED = "PAYMENT_LINK_CREATED"
    PAYMENT_APPROVED = "PAYMENT_APPROVED"
    PAYMENT_DECLINED = "PAYMENT_DECLINED"


class TemplateKind(str, Enum):
    TEXT = "TEXT"
    STRUCTURED = "STRUCTURED"


class PaymentType(str, Enum):
    SUBSCRIPTION = "SUBSCRIPTION"      # automatic debit on a subscription
    PLAN = "PLAN"                      # auto-generated link for a plan cycle
    LINK = "LINK"                      # one-off payment link


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    ERROR = "ERROR"
    VOIDED = "VOIDED"


class NotificationKind(str, Enum):
    """Canonical notification kinds offered by the admin wizard."""
    LINK_SENT = "LINK_SENT"
    PAYMENT_APPROVED_SUBSCRIPTION = "PAYMENT_APPROVED_SUBSCRIPTION"
    PAYMENT_APPROVED_PLAN = "PAYMENT_APPROVED_PLAN"
    PAYMENT_APPROVED_LINK = "PAYMENT_APPROVED_LINK"
    PAYMENT_DECLINED_SUBSCRIPTION = "PAYMENT_DECLINED_SUBSCRIPTION"
    PAYMENT_DECLINED_PLAN = "PAYMENT_DECLINED_PLAN"
    PAYMENT_DECLINED_LINK = "PAYMENT_DECLINED_LINK"
    REMINDER_DUE = "REMINDER_DUE"
    REMINDER_MORA = "REMINDER_MORA"


# ──────────────────────────────────────────────────────────────
#  Templates: message content
# ──────────────────────────────────────────────────────────────

class StructuredTemplateRef(CamelModel):
    """An externally registered message template addressed by name/language."""
    name: str
    language: str
    ordered_params: list[str] = []            # positional: {{1}}, {{2}}, …


class Template(CamelModel):
    id: str
    name: str
    channel: str = "messaging"
    kind: TemplateKind
    content: Optional[str] = None             # TEXT only
    structured_ref: Optional[StructuredTemplateRef] = None

    @model_validator(mode="after")
    def _check_kind_fields(self) -> Template:
        if self.kind == TemplateKind.TEXT and not (self.content or "").strip():
            raise ValueError(f"template '{self.id}': TEXT template requires content")
        if self.kind == TemplateKind.STRUCTURED and self.structured_ref is None:
            raise ValueError(f"template '{self.id}': STRUCTURED template requires structuredRef")
        return self


# ──────────────────────────────────────────────────────────────
#  Rules: when and how to fire a template
# ──────────────────────────────────────────────────────────────

class RuleConditions(CamelModel):
    skip_if_status_in: Optional[list[str]] = None
    require_payment_type_in: Optional[list[str]] = None
    skip_if_payment_status_in: Optional[list[str]] = None
    require_payment_status_in: Optional[list[str]] = None


class Rule(CamelModel):
    id: str
    name: str
    enabled: bool = True
    trigger: Trigger
    template_id: str
    offsets_seconds: list[int] = [0]
    at_time_utc: Optional[str] = None         # "HH:MM", UTC
    conditions: Optional[RuleConditions] = None
    ensure_payment_link: Optional[bool] = None
    kind: Optional[NotificationKind] = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_offsets_minutes(cls, data: Any) -> Any:
        """Older blobs carry `offsetsMinutes`; it applies only when seconds are absent or empty."""
        if not isinstance(data, dict):
            return data
        minutes = data.get("offsetsMinutes", data.get("offsets_minutes"))
        if not minutes or data.get("offsetsSeconds") or data.get("offsets_seconds"):
            return data
        data = {k: v for k, v in data.items() if k not in ("offsetsSeconds", "offsets_seconds")}
        data["offsetsSeconds"] = [
            int(m * 60) for m in minutes
            if isinstance(m, (int, float)) and not isinstance(m, bool) and math.isfinite(m)
        ]
        return data

    @field_validator("offsets_seconds")
    @classmethod
    def _default_offsets(cls, value: list[int]) -> list[int]:
        for offset in value:
            if abs(offset) > MAX_OFFSET_SECONDS:
                raise ValueError(f"offset {offset}s is out of range (max ±{MAX_OFFSET_SECONDS}s)")
        return value or [0]

    @field_validator("at_time_utc")
    @classmethod
    def _check_at_time(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not AT_TIME_PATTERN.match(value):
            raise ValueError(f"atTimeUtc must be HH:MM (24h), got {value!r}")
        return value


class NotificationConfig(CamelModel):
    """
    One configuration blob per environment.
    Replaced as a whole on every write; `version` is bumped by the store.
    """
    version: int = 0
    templates: list[Template] = []
    rules: list[Rule] = []

    @model_validator(mode="after")
    def _check_unique_template_ids(self) -> NotificationConfig:
        seen: set[str] = set()
        for tpl in self.templates:
            if tpl.id in seen:
                raise ValueError(f"duplicate template id '{tpl.id}'")
            seen.add(tpl.id)
        return self

    def get_template(self, template_id: str) -> Optional[Template]:
        return next((t for t in self.templates if t.id == template_id), None)

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return next((r for r in self.rules if r.id == rule_id), None)

    @property
    def template_ids(self) -> set[str]:
        return {t.id for t in self.templates}

    @property
    def rule_ids(self) -> set[str]:
        return {r.id for r in self.rules}


# ──────────────────────────────────────────────────────────────
#  Rendering output and scheduled jobs
# ──────────────────────────────────────────────────────────────

class RenderedMessage(CamelModel):
    kind: TemplateKind
    content: Optional[str] = None
    structured_name: Optional[str] = None
    language: Optional[str] = None
    ordered_params: list[str] = []


class ScheduledJob(CamelModel):
    """A rendered notification due at `fire_at`. Produced here, owned by the queue."""
    job_id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}")
    environment: Environment
    trigger: Trigger
    subscription_id: Optional[str] = None
    payment_id: Optional[str] = None
    rule_id: str
    template_id: str
    offset_seconds: int = 0
    anchor_at: datetime
    fire_at: datetime
    rendered_payload: RenderedMessage
    recipient: dict[str, Any] = {}
    dedupe_key: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _fill_dedupe_key(self) -> ScheduledJob:
        if not self.dedupe_key:
            entity = self.subscription_id or self.payment_id or "-"
            self.dedupe_key = f"{entity}:{self.rule_id}:{self.fire_at.isoformat()}"
        return self


class ScheduleResult(CamelModel):
    scheduled_count: int = 0


# ──────────────────────────────────────────────────────────────
#  Billing contexts: what the billing backend returns
# ──────────────────────────────────────────────────────────────

def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class SubscriptionContext(CamelModel):
    subscription_id: str
    due_date: datetime                        # current period end, the scheduling anchor
    status: str = "ACTIVE"                    # ACTIVE | PAST_DUE | EXPIRED | CANCELED | SUSPENDED
    payment_type: PaymentType = PaymentType.SUBSCRIPTION
    cycle_number: Optional[int] = None
    customer: dict[str, Any] = {}
    plan: dict[str, Any] = {}
    payment: dict[str, Any] = {}

    def to_context(self) -> dict[str, Any]:
        """Flatten into the dict that conditions and templates are evaluated against."""
        return {
            "customer": dict(self.customer),
            "plan": dict(self.plan),
            "payment": dict(self.payment),
            "subscription": {
                "id": self.subscription_id,
                "status": self.status,
                "dueDate": _iso(self.due_date),
                "currentPeriodEndAt": _iso(self.due_date),
                "cycleNumber": self.cycle_number,
            },
            "subscriptionStatus": self.status,
            "paymentType": self.payment_type.value,
        }


class PaymentContext(CamelModel):
    payment_id: str
    status: PaymentStatus = PaymentStatus.PENDING
    payment_type: PaymentType = PaymentType.LINK
    subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None
    checkout_url: Optional[str] = None
    reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    customer: dict[str, Any] = {}
    plan: dict[str, Any] = {}

    def to_context(self) -> dict[str, Any]:
        ctx: dict[str, Any] = {
            "customer": dict(self.customer),
            "plan": dict(self.plan),
            "payment": {
                "id": self.payment_id,
                "status": self.status.value,
                "checkoutUrl": self.checkout_url,
                "reference": self.reference,
                "paidAt": _iso(self.paid_at),
            },
            "subscription": {
                "id": self.subscription_id,
                "status": self.subscription_status,
            },
            "paymentType": self.payment_type.value,
            "paymentStatus": self.status.value,
        }
        if self.subscription_status:
            ctx["subscriptionStatus"] = self.subscription_status
        return ctx
