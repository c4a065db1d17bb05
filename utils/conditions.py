"""
Shared condition evaluator — used by the Trigger Resolver and the renderer.

Evaluates a rule's declarative conditions against a context dictionary.
Supports nested dot-notation field access over plain dicts.
"""
from __future__ import annotations

from typing import Any, Optional

from models.schemas import Rule, RuleConditions


def get_nested_value(data: Any, field: str) -> Any:
    """Get a value from nested dicts using dot notation. e.g. 'customer.name'"""
    current = data
    for part in field.split("."):
        if not part:
            continue
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def conditions_pass(conditions: Optional[RuleConditions], context: dict[str, Any]) -> bool:
    """Check every present condition key (AND logic). A missing key is unconstrained."""
    if conditions is None:
        return True

    if conditions.skip_if_status_in is not None:
        if context.get("subscriptionStatus") in conditions.skip_if_status_in:
            return False

    if conditions.require_payment_type_in is not None:
        if context.get("paymentType") not in conditions.require_payment_type_in:
            return False

    # Payment status checks only apply when a payment is in play
    payment_status = context.get("paymentStatus")
    if payment_status is not None:
        if conditions.skip_if_payment_status_in is not None:
            if payment_status in conditions.skip_if_payment_status_in:
                return False
        if conditions.require_payment_status_in is not None:
            if payment_status not in conditions.require_payment_status_in:
                return False

    return True


def passes(rule: Rule, context: dict[str, Any]) -> bool:
    """A disabled rule never passes, whatever its conditions."""
    if not rule.enabled:
        return False
    return conditions_pass(rule.conditions, context)
