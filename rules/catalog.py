"""
Notification kind catalog — default trigger/filter/timing per canonical kind.

Every NotificationKind must have an entry; the module refuses to import
otherwise, so a newly added kind can never fall through to a wrong default.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from models.schemas import NotificationKind, PaymentType, Trigger

DAY = 24 * 60 * 60


@dataclass(frozen=True)
class KindDefaults:
    trigger: Trigger
    payment_types: Optional[tuple[PaymentType, ...]]   # None → any payment type
    offsets_seconds: tuple[int, ...]
    ensure_payment_link: bool = False
    label: str = ""


KIND_DEFAULTS: dict[NotificationKind, KindDefaults] = {
    NotificationKind.LINK_SENT: KindDefaults(
        Trigger.PAYMENT_LINK_CREATED, None, (0,),
        label="Payment link sent",
    ),
    NotificationKind.PAYMENT_APPROVED_SUBSCRIPTION: KindDefaults(
        Trigger.PAYMENT_APPROVED, (PaymentType.SUBSCRIPTION,), (0,),
        label="Payment approved (subscription)",
    ),
    NotificationKind.PAYMENT_APPROVED_PLAN: KindDefaults(
        Trigger.PAYMENT_APPROVED, (PaymentType.PLAN,), (0,),
        label="Payment approved (plan)",
    ),
    NotificationKind.PAYMENT_APPROVED_LINK: KindDefaults(
        Trigger.PAYMENT_APPROVED, (PaymentType.LINK,), (0,),
        label="Payment approved (link)",
    ),
    NotificationKind.PAYMENT_DECLINED_SUBSCRIPTION: KindDefaults(
        Trigger.PAYMENT_DECLINED, (PaymentType.SUBSCRIPTION,), (0,),
        label="Payment declined (subscription)",
    ),
    NotificationKind.PAYMENT_DECLINED_PLAN: KindDefaults(
        Trigger.PAYMENT_DECLINED, (PaymentType.PLAN,), (0,),
        label="Payment declined (plan)",
    ),
    NotificationKind.PAYMENT_DECLINED_LINK: KindDefaults(
        Trigger.PAYMENT_DECLINED, (PaymentType.LINK,), (0,),
        label="Payment declined (link)",
    ),
    NotificationKind.REMINDER_DUE: KindDefaults(
        Trigger.SUBSCRIPTION_DUE, None, (-DAY,), ensure_payment_link=True,
        label="Due date reminder",
    ),
    NotificationKind.REMINDER_MORA: KindDefaults(
        Trigger.SUBSCRIPTION_DUE, None, (DAY,), ensure_payment_link=True,
        label="Past-due reminder",
    ),
}

_missing = set(NotificationKind) - set(KIND_DEFAULTS)
if _missing:
    raise RuntimeError(f"KIND_DEFAULTS is missing entries for: {sorted(k.value for k in _missing)}")


def defaults_for(kind: NotificationKind) -> KindDefaults:
    return KIND_DEFAULTS[kind]


def list_kinds() -> list[dict]:
    """Catalog as plain dicts, for the admin UI."""
    return [
        {
            "kind": kind.value,
            "label": d.label,
            "trigger": d.trigger.value,
            "paymentTypes": [p.value for p in d.payment_types] if d.payment_types else None,
            "offsetsSeconds": list(d.offsets_seconds),
            "ensurePaymentLink": d.ensure_payment_link,
        }
        for kind, d in KIND_DEFAULTS.items()
    ]
