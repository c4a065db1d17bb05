"""Tests for the shared condition evaluator."""
from types import SimpleNamespace

from models.schemas import Rule, RuleConditions, Trigger
from utils.conditions import conditions_pass, get_nested_value, passes


class TestGetNestedValue:
    def test_flat_key(self):
        assert get_nested_value({"name": "Alice"}, "name") == "Alice"

    def test_nested_key(self):
        data = {"customer": {"name": "Ana", "plan": {"amount": 499}}}
        assert get_nested_value(data, "customer.name") == "Ana"
        assert get_nested_value(data, "customer.plan.amount") == 499

    def test_missing_key(self):
        assert get_nested_value({"a": 1}, "b") is None

    def test_none_in_the_middle(self):
        assert get_nested_value({"payment": None}, "payment.checkoutUrl") is None

    def test_only_dicts_are_walked(self):
        data = {"customer": {"name": "Ana"}, "plan": SimpleNamespace(name="Pro")}
        assert get_nested_value(data, "customer.name.upper") is None
        assert get_nested_value(data, "customer.name.__class__") is None
        assert get_nested_value(data, "plan.name") is None


class TestConditionsPass:
    def test_no_conditions(self):
        assert conditions_pass(None, {})
        assert conditions_pass(RuleConditions(), {"subscriptionStatus": "CANCELED"})

    def test_skip_if_status_in(self):
        cond = RuleConditions(skip_if_status_in=["CANCELED"])
        assert not conditions_pass(cond, {"subscriptionStatus": "CANCELED"})
        assert conditions_pass(cond, {"subscriptionStatus": "ACTIVE"})
        assert conditions_pass(cond, {"subscriptionStatus": "PAST_DUE"})
        assert conditions_pass(cond, {})

    def test_require_payment_type_in(self):
        cond = RuleConditions(require_payment_type_in=["PLAN"])
        assert conditions_pass(cond, {"paymentType": "PLAN"})
        assert not conditions_pass(cond, {"paymentType": "LINK"})
        assert not conditions_pass(cond, {})

    def test_conditions_are_anded(self):
        cond = RuleConditions(skip_if_status_in=["CANCELED"], require_payment_type_in=["SUBSCRIPTION"])
        assert conditions_pass(cond, {"subscriptionStatus": "ACTIVE", "paymentType": "SUBSCRIPTION"})
        assert not conditions_pass(cond, {"subscriptionStatus": "CANCELED", "paymentType": "SUBSCRIPTION"})
        assert not conditions_pass(cond, {"subscriptionStatus": "ACTIVE", "paymentType": "LINK"})

    def test_payment_status_checks_need_a_payment(self):
        cond = RuleConditions(skip_if_payment_status_in=["APPROVED"], require_payment_status_in=["DECLINED"])
        # no payment in the context: unconstrained
        assert conditions_pass(cond, {"subscriptionStatus": "ACTIVE"})
        assert not conditions_pass(cond, {"paymentStatus": "APPROVED"})
        assert not conditions_pass(cond, {"paymentStatus": "PENDING"})
        assert conditions_pass(cond, {"paymentStatus": "DECLINED"})


class TestPasses:
    def _rule(self, **kwargs) -> Rule:
        return Rule(id="rule_x", name="x", trigger=Trigger.SUBSCRIPTION_DUE, template_id="tpl_x", **kwargs)

    def test_enabled_rule_without_conditions(self):
        assert passes(self._rule(), {})

    def test_disabled_rule_never_passes(self):
        assert not passes(self._rule(enabled=False), {})
        assert not passes(self._rule(enabled=False, conditions=RuleConditions()), {"paymentType": "PLAN"})
