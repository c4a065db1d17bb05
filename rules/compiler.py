"""
Rule Compiler — Turns admin input into Template and Rule records.

Responsibilities:
  - Validate template kind, trigger, timing and time-of-day input
  - Convert (direction, amount, unit) offsets into signed seconds
  - Generate template ids (slug + numeric suffix) and rule ids (random)
  - Apply the notification-kind catalog defaults
  - Persist every change as a full read → modify → write of the
    environment's config blob, passing the version that was read so a
    concurrent writer surfaces as VersionConflictError instead of a
    silent lost update
"""
from __future__ import annotations

import re
import uuid
import structlog
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

from core.offsets import parse_at_time
from database.store_base import BaseConfigStore
from models.errors import ConfigValidationError, NotFoundError
from models.schemas import (
    MAX_OFFSET_SECONDS, CamelModel, Environment, NotificationConfig, NotificationKind,
    Rule, RuleConditions, StructuredTemplateRef, Template, TemplateKind, Trigger,
)
from rules.catalog import KindDefaults, defaults_for

logger = structlog.get_logger()

T = TypeVar("T")

UNIT_SECONDS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
}
SLUG_MAX_LENGTH = 48


# ──────────────────────────────────────────────────────────────
#  Input models (what the admin wizard submits)
# ──────────────────────────────────────────────────────────────

class OffsetInput(CamelModel):
    direction: str = "before"           # before | after
    amount: Any = 0
    unit: str = "days"                  # seconds | minutes | hours | days


class TemplateInput(CamelModel):
    kind: str = TemplateKind.TEXT.value
    name: str = ""
    message: str = ""                   # TEXT content
    structured_name: str = ""           # STRUCTURED external template name
    language: str = ""
    params: list[str] = []              # STRUCTURED ordered parameters


class TimingInput(CamelModel):
    name: str = ""
    enabled: bool = True
    trigger: Optional[str] = None
    offsets: list[OffsetInput] = []
    offsets_seconds: Optional[list[Any]] = None
    at_time_utc: Optional[str] = None
    ensure_payment_link: Optional[bool] = None
    payment_types: Optional[list[str]] = None
    skip_if_status_in: Optional[list[str]] = None


# ──────────────────────────────────────────────────────────────
#  Pure helpers
# ──────────────────────────────────────────────────────────────

def offset_to_seconds(direction: str, amount: Any, unit: str) -> Optional[int]:
    """
    Signed seconds for one offset, truncated toward zero.
    Returns None when `amount` is not a finite number and raises
    invalid_offset when the result exceeds MAX_OFFSET_SECONDS.
    An unrecognised unit counts as minutes.
    """
    if isinstance(amount, bool):
        return None
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite():
        return None
    factor = UNIT_SECONDS.get(str(unit or "").strip().lower(), 60)
    seconds = value * factor if abs(value) <= MAX_OFFSET_SECONDS else value
    if str(direction or "").strip().lower() == "before":
        seconds = -seconds
    if abs(seconds) > MAX_OFFSET_SECONDS:
        raise ConfigValidationError(
            "invalid_offset", f"offset {amount} {unit} is out of range", amount=str(amount), unit=unit,
        )
    return int(seconds)


def compile_offsets(offsets: list[OffsetInput]) -> list[int]:
    result = []
    for o in offsets:
        seconds = offset_to_seconds(o.direction, o.amount, o.unit)
        if seconds is not None:
            result.append(seconds)
    return result or [0]


def _coerce_offsets(raw: list[Any]) -> list[int]:
    result = []
    for value in raw:
        seconds = offset_to_seconds("after", value, "seconds")
        if seconds is not None:
            result.append(seconds)
    return result or [0]


def slugify(name: str) -> str:
    base = re.sub(r"[^a-z0-9]+", "_", str(name or "").strip().lower()).strip("_")
    base = base[:SLUG_MAX_LENGTH].rstrip("_")
    return base or "notification"


def make_template_id(name: str, existing: set[str]) -> str:
    """tpl_<slug>, then tpl_<slug>_2, tpl_<slug>_3, … until unused."""
    base = f"tpl_{slugify(name)}"
    if base not in existing:
        return base
    n = 2
    while f"{base}_{n}" in existing:
        n += 1
    return f"{base}_{n}"


def make_rule_id(existing: set[str]) -> str:
    while True:
        rule_id = f"rule_{uuid.uuid4().hex[:12]}"
        if rule_id not in existing:
            return rule_id


def _text(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    return str(value or "").strip()


def parse_trigger(value: Any) -> Trigger:
    try:
        return Trigger(_text(value).upper())
    except ValueError:
        raise ConfigValidationError("invalid_trigger", f"unknown trigger {value!r}") from None


def parse_template_kind(value: Any) -> TemplateKind:
    try:
        return TemplateKind(_text(value).upper())
    except ValueError:
        raise ConfigValidationError("invalid_template_kind", f"unknown template kind {value!r}") from None


def parse_kind(value: Any) -> Optional[NotificationKind]:
    if value is None or value == "":
        return None
    try:
        return NotificationKind(_text(value).upper())
    except ValueError:
        raise ConfigValidationError("invalid_kind", f"unknown notification kind {value!r}") from None


def validate_at_time(value: Optional[str]) -> Optional[str]:
    if value is None or str(value).strip() == "":
        return None
    parse_at_time(value)
    return str(value).strip()


def _require_id(value: str, field: str) -> str:
    value = str(value or "").strip()
    if not value:
        raise ConfigValidationError("missing_fields", f"{field} is required")
    return value


# ──────────────────────────────────────────────────────────────
#  Compiler
# ──────────────────────────────────────────────────────────────

class RuleCompiler:
    """Validates admin input and maintains templates/rules in the config store."""

    def __init__(self, store: BaseConfigStore):
        self.store = store

    # ── Compilation (pure) ────────────────────────────────────

    def compile_template(self, template_input: TemplateInput, existing_ids: set[str],
                         fallback_name: str = "") -> Template:
        kind = parse_template_kind(template_input.kind)
        name = template_input.name.strip() or fallback_name or "Notification"

        if kind == TemplateKind.TEXT:
            message = template_input.message or ""
            if not message.strip():
                raise ConfigValidationError("missing_message", "TEXT templates need a message")
            return Template(
                id=make_template_id(name, existing_ids),
                name=name,
                kind=kind,
                content=message,
            )

        structured_name = template_input.structured_name.strip()
        language = template_input.language.strip()
        if not structured_name or not language:
            raise ConfigValidationError(
                "missing_template_fields", "STRUCTURED templates need a template name and language"
            )
        return Template(
            id=make_template_id(name, existing_ids),
            name=name,
            kind=kind,
            structured_ref=StructuredTemplateRef(
                name=structured_name,
                language=language,
                ordered_params=list(template_input.params),
            ),
        )

    def compile(
        self,
        config: NotificationConfig,
        kind: Any = None,
        template_input: Optional[TemplateInput] = None,
        timing_input: Optional[TimingInput] = None,
    ) -> tuple[Template, Rule]:
        """
        Build a (Template, Rule) pair against `config` without persisting it.
        Catalog defaults for `kind` apply wherever the timing input is silent.
        """
        template_input = template_input or TemplateInput()
        timing_input = timing_input or TimingInput()
        notification_kind = parse_kind(kind)
        defaults: Optional[KindDefaults] = defaults_for(notification_kind) if notification_kind else None

        if timing_input.trigger:
            trigger = parse_trigger(timing_input.trigger)
        elif defaults:
            trigger = defaults.trigger
        else:
            raise ConfigValidationError("invalid_trigger", "a trigger or notification kind is required")

        if timing_input.offsets_seconds is not None:
            offsets = _coerce_offsets(timing_input.offsets_seconds)
        elif timing_input.offsets:
            offsets = compile_offsets(timing_input.offsets)
        elif defaults:
            offsets = list(defaults.offsets_seconds)
        else:
            offsets = [0]

        at_time = validate_at_time(timing_input.at_time_utc)

        payment_types = timing_input.payment_types
        if payment_types is None and defaults and defaults.payment_types:
            payment_types = [p.value for p in defaults.payment_types]

        ensure_link = timing_input.ensure_payment_link
        if ensure_link is None and defaults and defaults.ensure_payment_link:
            ensure_link = True

        conditions = None
        if payment_types is not None or timing_input.skip_if_status_in is not None:
            conditions = RuleConditions(
                skip_if_status_in=timing_input.skip_if_status_in,
                require_payment_type_in=payment_types,
            )

        fallback_name = timing_input.name.strip() or (defaults.label if defaults else "")
        template = self.compile_template(template_input, config.template_ids, fallback_name)

        rule = Rule(
            id=make_rule_id(config.rule_ids),
            name=timing_input.name.strip() or template.name,
            enabled=timing_input.enabled,
            trigger=trigger,
            template_id=template.id,
            offsets_seconds=offsets,
            at_time_utc=at_time,
            conditions=conditions,
            ensure_payment_link=ensure_link,
            kind=notification_kind,
        )
        return template, rule

    # ── Persistence ───────────────────────────────────────────

    async def _mutate(self, environment: Any, change: Callable[[NotificationConfig], T]) -> T:
        """Read the blob, apply `change` to a private copy, write it back."""
        env = Environment.parse(environment)
        current = await self.store.get(env)
        config = current.model_copy(deep=True) if current else NotificationConfig()
        result = change(config)
        await self.store.put(env, config, expected_version=current.version if current else 0)
        return result

    async def create_notification(
        self,
        environment: Any,
        kind: Any = None,
        template_input: Optional[TemplateInput] = None,
        timing_input: Optional[TimingInput] = None,
    ) -> tuple[Template, Rule]:
        def change(config: NotificationConfig) -> tuple[Template, Rule]:
            template, rule = self.compile(config, kind, template_input, timing_input)
            config.templates.append(template)
            config.rules.append(rule)
            return template, rule

        template, rule = await self._mutate(environment, change)
        logger.info("notification_created",
                    environment=Environment.parse(environment).value,
                    template_id=template.id,
                    rule_id=rule.id,
                    trigger=rule.trigger.value,
                    offsets=rule.offsets_seconds)
        return template, rule

    async def add_text_template(self, environment: Any, name: str, content: str) -> Template:
        template_input = TemplateInput(kind=TemplateKind.TEXT.value, name=name, message=content)

        def change(config: NotificationConfig) -> Template:
            template = self.compile_template(template_input, config.template_ids)
            config.templates.append(template)
            return template

        template = await self._mutate(environment, change)
        logger.info("template_added", template_id=template.id, kind="TEXT")
        return template

    async def add_structured_template(
        self,
        environment: Any,
        name: str,
        structured_name: str,
        language: str,
        params: Optional[list[str]] = None,
    ) -> Template:
        template_input = TemplateInput(
            kind=TemplateKind.STRUCTURED.value, name=name,
            structured_name=structured_name, language=language, params=params or [],
        )

        def change(config: NotificationConfig) -> Template:
            template = self.compile_template(template_input, config.template_ids)
            config.templates.append(template)
            return template

        template = await self._mutate(environment, change)
        logger.info("template_added", template_id=template.id, kind="STRUCTURED")
        return template

    async def add_rule(
        self,
        environment: Any,
        name: str,
        trigger: Any,
        template_id: str,
        offsets: Optional[list[OffsetInput]] = None,
        offsets_seconds: Optional[list[Any]] = None,
        at_time_utc: Optional[str] = None,
        conditions: Optional[RuleConditions] = None,
        ensure_payment_link: Optional[bool] = None,
        enabled: bool = True,
    ) -> Rule:
        """
        Append a rule pointing at `template_id`. The template is not required
        to exist yet; rules with a dangling template are skipped at schedule time.
        """
        name = str(name or "").strip()
        template_id = str(template_id or "").strip()
        if not name or not template_id:
            raise ConfigValidationError("missing_fields", "rule name and templateId are required")
        parsed_trigger = parse_trigger(trigger)
        at_time = validate_at_time(at_time_utc)
        if offsets_seconds is not None:
            compiled_offsets = _coerce_offsets(offsets_seconds)
        else:
            compiled_offsets = compile_offsets(offsets or [])

        def change(config: NotificationConfig) -> Rule:
            rule = Rule(
                id=make_rule_id(config.rule_ids),
                name=name,
                enabled=enabled,
                trigger=parsed_trigger,
                template_id=template_id,
                offsets_seconds=compiled_offsets,
                at_time_utc=at_time,
                conditions=conditions,
                ensure_payment_link=ensure_payment_link,
            )
            config.rules.append(rule)
            return rule

        rule = await self._mutate(environment, change)
        logger.info("rule_added", rule_id=rule.id, trigger=rule.trigger.value, template_id=template_id)
        return rule

    async def toggle_rule(self, environment: Any, rule_id: str, enabled: Optional[bool] = None) -> Rule:
        """Set `enabled`, or flip it when `enabled` is None."""
        rule_id = _require_id(rule_id, "ruleId")

        def change(config: NotificationConfig) -> Rule:
            rule = config.get_rule(rule_id)
            if rule is None:
                raise NotFoundError("not_found", f"rule '{rule_id}' does not exist")
            rule.enabled = (not rule.enabled) if enabled is None else bool(enabled)
            return rule

        rule = await self._mutate(environment, change)
        logger.info("rule_toggled", rule_id=rule_id, enabled=rule.enabled)
        return rule

    async def delete_rule(self, environment: Any, rule_id: str) -> None:
        rule_id = _require_id(rule_id, "ruleId")

        def change(config: NotificationConfig) -> None:
            if config.get_rule(rule_id) is None:
                raise NotFoundError("not_found", f"rule '{rule_id}' does not exist")
            config.rules = [r for r in config.rules if r.id != rule_id]

        await self._mutate(environment, change)
        logger.info("rule_deleted", rule_id=rule_id)

    async def delete_template(self, environment: Any, template_id: str) -> int:
        """Remove the template and every rule that references it. Returns the number of rules removed."""
        template_id = _require_id(template_id, "templateId")

        def change(config: NotificationConfig) -> int:
            if config.get_template(template_id) is None:
                raise NotFoundError("not_found", f"template '{template_id}' does not exist")
            config.templates = [t for t in config.templates if t.id != template_id]
            kept = [r for r in config.rules if r.template_id != template_id]
            removed = len(config.rules) - len(kept)
            config.rules = kept
            return removed

        removed = await self._mutate(environment, change)
        logger.info("template_deleted", template_id=template_id, rules_removed=removed)
        return removed
