"""Shared test fixtures for the notification engine."""
from datetime import datetime, timezone

import pytest

from backend.connector import MockBillingConnector
from channels.messaging_adapter import MessagingAdapter
from config.settings import ChannelConfig, Settings
from core.dispatcher import SchedulingDispatcher
from database.store_memory import InMemoryConfigStore
from job_queue.message_queue import InMemoryNotificationQueue
from models.schemas import (
    Environment, NotificationConfig, PaymentContext, PaymentStatus, PaymentType,
    Rule, SubscriptionContext, Template, TemplateKind, Trigger,
)
from rules.compiler import RuleCompiler


UTC = timezone.utc
DUE_DATE = datetime(2024, 3, 1, tzinfo=UTC)
NOW = datetime(2024, 2, 20, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _reset_singletons():
    """The queue factory caches its instance at module level; start every test clean."""
    from job_queue.message_queue import reset_notification_queue
    reset_notification_queue()
    yield
    reset_notification_queue()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def store() -> InMemoryConfigStore:
    return InMemoryConfigStore()


@pytest.fixture
def compiler(store) -> RuleCompiler:
    return RuleCompiler(store)


@pytest.fixture
def subscription() -> SubscriptionContext:
    return SubscriptionContext(
        subscription_id="sub_1",
        due_date=DUE_DATE,
        status="ACTIVE",
        payment_type=PaymentType.SUBSCRIPTION,
        cycle_number=3,
        customer={"name": "Ana", "email": "ana@example.com", "phone": "+5215550000000"},
        plan={"name": "Pro", "amount": 499},
    )


@pytest.fixture
def billing(subscription) -> MockBillingConnector:
    return MockBillingConnector(
        subscriptions=[subscription],
        payments=[
            PaymentContext(
                payment_id="pay_approved",
                status=PaymentStatus.APPROVED,
                payment_type=PaymentType.SUBSCRIPTION,
                subscription_id="sub_1",
                subscription_status="ACTIVE",
                customer={"name": "Ana", "email": "ana@example.com"},
                plan={"name": "Pro"},
            ),
            PaymentContext(
                payment_id="pay_declined",
                status=PaymentStatus.DECLINED,
                payment_type=PaymentType.LINK,
                checkout_url="https://pay.example.com/checkout/pay_declined",
                customer={"name": "Luis", "email": "luis@example.com"},
            ),
            PaymentContext(
                payment_id="pay_pending",
                status=PaymentStatus.PENDING,
                payment_type=PaymentType.LINK,
                checkout_url="https://pay.example.com/checkout/pay_pending",
                customer={"name": "Luis"},
            ),
        ],
    )


@pytest.fixture
def queue() -> InMemoryNotificationQueue:
    return InMemoryNotificationQueue()


@pytest.fixture
def channel() -> MessagingAdapter:
    return MessagingAdapter(ChannelConfig())


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def dispatcher(store, billing, queue, channel, settings, clock) -> SchedulingDispatcher:
    return SchedulingDispatcher(store, billing, queue, channel, settings=settings, clock=clock)


@pytest.fixture
def sample_config() -> NotificationConfig:
    """Two templates, rules across triggers, one disabled and one conditional."""
    return NotificationConfig(
        templates=[
            Template(id="tpl_due", name="Due", kind=TemplateKind.TEXT,
                     content="Hola {{customer.name}}, tu pago vence el {{subscription.dueDate}}"),
            Template(id="tpl_ok", name="Approved", kind=TemplateKind.TEXT,
                     content="Gracias {{customer.name}}"),
        ],
        rules=[
            Rule(id="rule_due", name="Due", trigger=Trigger.SUBSCRIPTION_DUE,
                 template_id="tpl_due", offsets_seconds=[-86400]),
            Rule(id="rule_off", name="Off", enabled=False, trigger=Trigger.SUBSCRIPTION_DUE,
                 template_id="tpl_due", offsets_seconds=[0]),
            Rule(id="rule_ok", name="Approved", trigger=Trigger.PAYMENT_APPROVED,
                 template_id="tpl_ok"),
            Rule(id="rule_mora", name="Mora", trigger=Trigger.SUBSCRIPTION_DUE,
                 template_id="tpl_due", offsets_seconds=[86400],
                 conditions={"skipIfStatusIn": ["CANCELED"]}),
        ],
    )


@pytest.fixture
def production() -> Environment:
    return Environment.PRODUCTION
