"""Tests for the rule compiler: validation, ids, offsets and persisted CRUD."""
import re

import pytest

from models.errors import ConfigValidationError, NotFoundError, VersionConflictError
from models.schemas import (
    MAX_OFFSET_SECONDS, Environment, NotificationConfig, NotificationKind, Rule, RuleConditions, TemplateKind,
    Trigger,
)
from rules.compiler import (
    OffsetInput, TemplateInput, TimingInput,
    compile_offsets, make_rule_id, make_template_id, offset_to_seconds, slugify,
)

RULE_ID = re.compile(r"^rule_[0-9a-f]{12}$")


# ──────────────────────────────────────────────────────────────
#  Pure helpers
# ──────────────────────────────────────────────────────────────

class TestOffsetToSeconds:
    @pytest.mark.parametrize("direction,amount,unit,expected", [
        ("before", 1, "days", -86400),
        ("after", 2, "hours", 7200),
        ("after", 30, "minutes", 1800),
        ("after", 45, "seconds", 45),
        ("after", 1.5, "minutes", 90),
        ("before", 1.9, "seconds", -1),       # truncated toward zero
        ("after", "3", "days", 3 * 86400),
        ("after", 5, "weeks", 300),           # unknown unit → minutes
    ])
    def test_conversion(self, direction, amount, unit, expected):
        assert offset_to_seconds(direction, amount, unit) == expected

    @pytest.mark.parametrize("amount", ["abc", None, float("nan"), float("inf"), True])
    def test_non_finite_amount_dropped(self, amount):
        assert offset_to_seconds("after", amount, "days") is None

    @pytest.mark.parametrize("direction,amount,unit", [
        ("after", "1e9", "days"),
        ("before", 10**15, "seconds"),
        ("after", "1e999999", "hours"),
    ])
    def test_out_of_range_amount_rejected(self, direction, amount, unit):
        with pytest.raises(ConfigValidationError) as exc:
            offset_to_seconds(direction, amount, unit)
        assert exc.value.code == "invalid_offset"

    def test_largest_offset_accepted(self):
        assert offset_to_seconds("before", 999_999_999, "days") == -MAX_OFFSET_SECONDS

    def test_compile_offsets_defaults_to_zero(self):
        assert compile_offsets([]) == [0]
        assert compile_offsets([OffsetInput(direction="after", amount="x", unit="days")]) == [0]

    def test_compile_offsets_keeps_order(self):
        offsets = [
            OffsetInput(direction="before", amount=1, unit="days"),
            OffsetInput(direction="after", amount=1, unit="days"),
        ]
        assert compile_offsets(offsets) == [-86400, 86400]


class TestIds:
    def test_slugify(self):
        assert slugify("Recordatorio de Pago!") == "recordatorio_de_pago"
        assert slugify("  --Due  Reminder--  ") == "due_reminder"
        assert slugify("!!!") == "notification"
        assert slugify("") == "notification"

    def test_slug_capped(self):
        assert len(slugify("x" * 200)) == 48

    def test_template_id_suffixes(self):
        assert make_template_id("Due", set()) == "tpl_due"
        assert make_template_id("Due", {"tpl_due"}) == "tpl_due_2"
        assert make_template_id("Due", {"tpl_due", "tpl_due_2"}) == "tpl_due_3"

    def test_rule_id_shape(self):
        rule_id = make_rule_id(set())
        assert RULE_ID.match(rule_id)


# ──────────────────────────────────────────────────────────────
#  compile()
# ──────────────────────────────────────────────────────────────

class TestCompile:
    def test_reminder_due_defaults(self, compiler):
        template, rule = compiler.compile(
            NotificationConfig(), NotificationKind.REMINDER_DUE.value,
            TemplateInput(message="Hola {{customer.name}}"), TimingInput(),
        )
        assert template.kind == TemplateKind.TEXT
        assert template.id == "tpl_due_date_reminder"
        assert rule.trigger == Trigger.SUBSCRIPTION_DUE
        assert rule.offsets_seconds == [-86400]
        assert rule.ensure_payment_link is True
        assert rule.template_id == template.id
        assert rule.kind == NotificationKind.REMINDER_DUE
        assert RULE_ID.match(rule.id)

    def test_reminder_mora_defaults(self, compiler):
        _, rule = compiler.compile(NotificationConfig(), "reminder_mora", TemplateInput(message="x"))
        assert rule.offsets_seconds == [86400]

    def test_kind_payment_type_filter(self, compiler):
        _, rule = compiler.compile(
            NotificationConfig(), NotificationKind.PAYMENT_APPROVED_PLAN, TemplateInput(message="ok"),
        )
        assert rule.trigger == Trigger.PAYMENT_APPROVED
        assert rule.conditions.require_payment_type_in == ["PLAN"]

    def test_link_sent_has_no_type_filter(self, compiler):
        _, rule = compiler.compile(NotificationConfig(), "LINK_SENT", TemplateInput(message="link"))
        assert rule.trigger == Trigger.PAYMENT_LINK_CREATED
        assert rule.conditions is None

    def test_timing_overrides_kind(self, compiler):
        _, rule = compiler.compile(
            NotificationConfig(), "REMINDER_DUE", TemplateInput(message="x"),
            TimingInput(
                trigger="payment_declined",
                offsets=[OffsetInput(direction="before", amount=2, unit="hours")],
                at_time_utc="09:30",
                ensure_payment_link=False,
            ),
        )
        assert rule.trigger == Trigger.PAYMENT_DECLINED
        assert rule.offsets_seconds == [-7200]
        assert rule.at_time_utc == "09:30"
        assert rule.ensure_payment_link is False

    def test_raw_offsets_seconds(self, compiler):
        _, rule = compiler.compile(
            NotificationConfig(), None, TemplateInput(message="x"),
            TimingInput(trigger="SUBSCRIPTION_DUE", offsets_seconds=[-3600, "bad", 0]),
        )
        assert rule.offsets_seconds == [-3600, 0]

    def test_structured_template(self, compiler):
        template, _ = compiler.compile(
            NotificationConfig(), "PAYMENT_DECLINED_LINK",
            TemplateInput(kind="STRUCTURED", name="Declined", structured_name="payment_declined",
                          language="es_MX", params=["{{customer.name}}", "{{payment.checkoutUrl}}"]),
        )
        assert template.kind == TemplateKind.STRUCTURED
        assert template.structured_ref.name == "payment_declined"
        assert template.structured_ref.ordered_params == ["{{customer.name}}", "{{payment.checkoutUrl}}"]

    def test_template_id_collision(self, compiler):
        config = NotificationConfig()
        first, _ = compiler.compile(config, "REMINDER_DUE", TemplateInput(name="Aviso", message="x"))
        config.templates.append(first)
        second, _ = compiler.compile(config, "REMINDER_DUE", TemplateInput(name="Aviso", message="y"))
        assert (first.id, second.id) == ("tpl_aviso", "tpl_aviso_2")

    @pytest.mark.parametrize("kind,template_input,timing,code", [
        ("NOPE", TemplateInput(message="x"), TimingInput(), "invalid_kind"),
        ("REMINDER_DUE", TemplateInput(kind="VOICE", message="x"), TimingInput(), "invalid_template_kind"),
        ("REMINDER_DUE", TemplateInput(message="   "), TimingInput(), "missing_message"),
        ("REMINDER_DUE", TemplateInput(kind="STRUCTURED", structured_name="t"), TimingInput(),
         "missing_template_fields"),
        ("REMINDER_DUE", TemplateInput(message="x"), TimingInput(trigger="ON_BIRTHDAY"), "invalid_trigger"),
        (None, TemplateInput(message="x"), TimingInput(), "invalid_trigger"),
        ("REMINDER_DUE", TemplateInput(message="x"), TimingInput(at_time_utc="24:00"), "invalid_time"),
        ("REMINDER_DUE", TemplateInput(message="x"),
         TimingInput(offsets=[OffsetInput(direction="after", amount="1e9", unit="days")]), "invalid_offset"),
        ("REMINDER_DUE", TemplateInput(message="x"), TimingInput(offsets_seconds=[10**15]), "invalid_offset"),
    ])
    def test_validation_errors(self, compiler, kind, template_input, timing, code):
        with pytest.raises(ConfigValidationError) as exc:
            compiler.compile(NotificationConfig(), kind, template_input, timing)
        assert exc.value.code == code


# ──────────────────────────────────────────────────────────────
#  Persisted operations
# ──────────────────────────────────────────────────────────────

class TestPersistence:
    @pytest.mark.asyncio
    async def test_create_notification_persists_both(self, compiler, store):
        template, rule = await compiler.create_notification(
            "production", "REMINDER_DUE", TemplateInput(message="Hola {{customer.name}}"),
        )
        config = await store.get(Environment.PRODUCTION)
        assert config.version == 1
        assert config.template_ids == {template.id}
        assert config.rule_ids == {rule.id}
        assert await store.get(Environment.SANDBOX) is None

    @pytest.mark.asyncio
    async def test_failed_validation_writes_nothing(self, compiler, store):
        with pytest.raises(ConfigValidationError):
            await compiler.create_notification("PRODUCTION", "REMINDER_DUE", TemplateInput(message=""))
        assert await store.get(Environment.PRODUCTION) is None

    @pytest.mark.asyncio
    async def test_invalid_environment(self, compiler):
        with pytest.raises(ConfigValidationError) as exc:
            await compiler.add_text_template("STAGING", "x", "y")
        assert exc.value.code == "invalid_environment"

    @pytest.mark.asyncio
    async def test_add_templates_and_rule(self, compiler, store):
        text = await compiler.add_text_template("PRODUCTION", "Due", "Hola {{customer.name}}")
        structured = await compiler.add_structured_template("PRODUCTION", "Due", "due_tpl", "es", ["{{plan.name}}"])
        assert (text.id, structured.id) == ("tpl_due", "tpl_due_2")

        rule = await compiler.add_rule(
            "PRODUCTION", "Due rule", "SUBSCRIPTION_DUE", text.id,
            offsets=[OffsetInput(direction="before", amount=3, unit="days")],
            conditions=RuleConditions(skip_if_status_in=["CANCELED"]),
        )
        config = await store.get(Environment.PRODUCTION)
        assert config.version == 3
        assert config.get_rule(rule.id).offsets_seconds == [-3 * 86400]

    @pytest.mark.asyncio
    async def test_add_rule_requires_fields(self, compiler):
        with pytest.raises(ConfigValidationError) as exc:
            await compiler.add_rule("PRODUCTION", "", "SUBSCRIPTION_DUE", "tpl_x")
        assert exc.value.code == "missing_fields"
        with pytest.raises(ConfigValidationError) as exc:
            await compiler.add_rule("PRODUCTION", "r", "SUBSCRIPTION_DUE", "")
        assert exc.value.code == "missing_fields"

    @pytest.mark.asyncio
    async def test_add_rule_tolerates_dangling_template(self, compiler, store):
        rule = await compiler.add_rule("PRODUCTION", "r", "SUBSCRIPTION_DUE", "tpl_later")
        assert rule.template_id == "tpl_later"
        assert rule.offsets_seconds == [0]

    @pytest.mark.asyncio
    async def test_toggle_rule(self, compiler, store):
        _, rule = await compiler.create_notification("PRODUCTION", "REMINDER_DUE", TemplateInput(message="x"))
        toggled = await compiler.toggle_rule("PRODUCTION", rule.id)
        assert toggled.enabled is False
        toggled = await compiler.toggle_rule("PRODUCTION", rule.id, enabled=False)
        assert toggled.enabled is False
        toggled = await compiler.toggle_rule("PRODUCTION", rule.id)
        assert toggled.enabled is True
        assert (await store.get("PRODUCTION")).get_rule(rule.id).enabled is True

    @pytest.mark.asyncio
    async def test_unknown_ids(self, compiler):
        with pytest.raises(NotFoundError) as exc:
            await compiler.toggle_rule("PRODUCTION", "rule_missing")
        assert exc.value.code == "not_found"
        with pytest.raises(NotFoundError):
            await compiler.delete_rule("PRODUCTION", "rule_missing")
        with pytest.raises(NotFoundError):
            await compiler.delete_template("PRODUCTION", "tpl_missing")

    @pytest.mark.asyncio
    async def test_empty_ids(self, compiler):
        for call in (compiler.toggle_rule, compiler.delete_rule, compiler.delete_template):
            with pytest.raises(ConfigValidationError) as exc:
                await call("PRODUCTION", "  ")
            assert exc.value.code == "missing_fields"

    @pytest.mark.asyncio
    async def test_delete_template_cascades(self, compiler, store, sample_config):
        await store.put(Environment.PRODUCTION, sample_config)
        removed = await compiler.delete_template("PRODUCTION", "tpl_due")
        assert removed == 3
        config = await store.get(Environment.PRODUCTION)
        assert config.template_ids == {"tpl_ok"}
        assert config.rule_ids == {"rule_ok"}

    @pytest.mark.asyncio
    async def test_delete_rule(self, compiler, store, sample_config):
        await store.put(Environment.PRODUCTION, sample_config)
        await compiler.delete_rule("PRODUCTION", "rule_off")
        config = await store.get(Environment.PRODUCTION)
        assert "rule_off" not in config.rule_ids
        assert config.template_ids == {"tpl_due", "tpl_ok"}

    @pytest.mark.asyncio
    async def test_stale_write_rejected(self, compiler, store):
        await compiler.add_text_template("PRODUCTION", "First", "a")
        snapshot = await store.get(Environment.PRODUCTION)
        await compiler.add_text_template("PRODUCTION", "Second", "b")

        with pytest.raises(VersionConflictError):
            await store.put(Environment.PRODUCTION, snapshot, expected_version=snapshot.version)
        assert len((await store.get(Environment.PRODUCTION)).templates) == 2


# ──────────────────────────────────────────────────────────────
#  Stored rule blobs
# ──────────────────────────────────────────────────────────────

class TestRuleBlob:
    BASE = {"id": "rule_x", "name": "x", "trigger": "SUBSCRIPTION_DUE", "templateId": "tpl_x"}

    def test_offsets_minutes_fallback(self):
        rule = Rule.model_validate({**self.BASE, "offsetsMinutes": [-60, 30]})
        assert rule.offsets_seconds == [-3600, 1800]
        assert "offsetsMinutes" not in rule.to_dict()

    def test_offsets_minutes_when_seconds_empty(self):
        rule = Rule.model_validate({**self.BASE, "offsetsSeconds": [], "offsets_minutes": [-1440]})
        assert rule.offsets_seconds == [-86400]

    def test_offsets_seconds_win(self):
        rule = Rule.model_validate({**self.BASE, "offsetsSeconds": [-10], "offsetsMinutes": [-60]})
        assert rule.offsets_seconds == [-10]

    def test_legacy_blob_loads_into_config(self):
        config = NotificationConfig.model_validate({"rules": [{**self.BASE, "offsetsMinutes": [-60]}]})
        assert config.rules[0].offsets_seconds == [-3600]

    def test_out_of_range_seconds_rejected(self):
        with pytest.raises(ValueError):
            Rule.model_validate({**self.BASE, "offsetsSeconds": [MAX_OFFSET_SECONDS + 1]})
