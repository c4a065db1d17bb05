"""
Billing Connector — Adapter for the subscription-billing backend.

The notification engine only needs three things from billing:
  - the context of a subscription (customer, plan, due date, status)
  - the context of a payment (status, payment type, checkout link)
  - an open checkout link for a subscription's current cycle

The connector is configured via settings.yaml and provides a uniform
interface for the dispatcher; a mock implementation keeps the service
runnable without a billing deployment.
"""
from __future__ import annotations

import abc
import uuid
import structlog
from typing import Any, Optional

import httpx
from pydantic import ValidationError
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import BillingConfig, get_settings
from models.errors import NotificationError
from models.schemas import PaymentContext, SubscriptionContext

logger = structlog.get_logger()


class BillingError(NotificationError):
    """The billing backend failed or returned something unusable."""
    code = "billing_error"


class BillingConnector(abc.ABC):
    """Abstract base for all billing connectors."""

    @abc.abstractmethod
    async def get_subscription_context(self, subscription_id: str) -> Optional[SubscriptionContext]:
        """Return the subscription's context, or None if it does not exist."""
        ...

    @abc.abstractmethod
    async def get_payment_context(self, payment_id: str) -> Optional[PaymentContext]:
        """Return the payment's context, or None if it does not exist."""
        ...

    @abc.abstractmethod
    async def ensure_payment_link(self, subscription_id: str) -> dict[str, Any]:
        """
        Make sure the subscription's current cycle has an open checkout link.
        Returns {"checkout_url": str, "payment_id": str}.
        """
        ...

    async def close(self):
        pass


class RESTBillingConnector(BillingConnector):
    """
    REST API billing connector.
    Calls the endpoints named in settings (`billing.endpoints`).
    """

    def __init__(self, config: BillingConfig = None):
        self.config = config or get_settings().billing
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10), reraise=True)
    async def _request(self, method: str, endpoint: str, **kwargs) -> Optional[dict[str, Any]]:
        """Call a named endpoint. A 404 is returned as None, not retried."""
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, endpoint)
        # Replace path parameters
        for k, v in kwargs.pop("path_params", {}).items():
            url = url.replace(f"{{{k}}}", str(v))

        response = await client.request(method, url, **kwargs)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        body = response.json()
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            return body["data"]
        return body

    async def get_subscription_context(self, subscription_id: str) -> Optional[SubscriptionContext]:
        try:
            raw = await self._request(
                "GET", "get_subscription",
                path_params={"subscription_id": subscription_id},
            )
        except httpx.HTTPError as e:
            logger.error("billing_fetch_subscription_failed", subscription_id=subscription_id, error=str(e))
            raise BillingError("billing_error", f"subscription lookup failed: {e}") from e
        if raw is None:
            return None
        try:
            return SubscriptionContext.model_validate(raw)
        except ValidationError as e:
            raise BillingError("billing_error", f"malformed subscription context: {e}") from e

    async def get_payment_context(self, payment_id: str) -> Optional[PaymentContext]:
        try:
            raw = await self._request(
                "GET", "get_payment",
                path_params={"payment_id": payment_id},
            )
        except httpx.HTTPError as e:
            logger.error("billing_fetch_payment_failed", payment_id=payment_id, error=str(e))
            raise BillingError("billing_error", f"payment lookup failed: {e}") from e
        if raw is None:
            return None
        try:
            return PaymentContext.model_validate(raw)
        except ValidationError as e:
            raise BillingError("billing_error", f"malformed payment context: {e}") from e

    async def ensure_payment_link(self, subscription_id: str) -> dict[str, Any]:
        try:
            raw = await self._request(
                "POST", "ensure_payment_link",
                path_params={"subscription_id": subscription_id},
            )
        except httpx.HTTPError as e:
            raise BillingError("billing_error", f"payment link request failed: {e}") from e
        if not raw:
            raise BillingError("billing_error", f"no payment link for subscription '{subscription_id}'")
        checkout_url = raw.get("checkout_url") or raw.get("checkoutUrl")
        if not checkout_url:
            raise BillingError("billing_error", "payment link response has no checkout url")
        return {
            "checkout_url": checkout_url,
            "payment_id": str(raw.get("payment_id") or raw.get("paymentId") or ""),
        }

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockBillingConnector(BillingConnector):
    """
    Mock billing backend for development and testing.
    Fixtures are plain context models keyed by id.
    """

    def __init__(
        self,
        subscriptions: Optional[list[SubscriptionContext]] = None,
        payments: Optional[list[PaymentContext]] = None,
        fail_payment_links: bool = False,
    ):
        self._subscriptions = {s.subscription_id: s for s in subscriptions or []}
        self._payments = {p.payment_id: p for p in payments or []}
        self._links: dict[str, dict[str, Any]] = {}
        self.fail_payment_links = fail_payment_links

    def add_subscription(self, ctx: SubscriptionContext):
        self._subscriptions[ctx.subscription_id] = ctx

    def add_payment(self, ctx: PaymentContext):
        self._payments[ctx.payment_id] = ctx

    async def get_subscription_context(self, subscription_id: str) -> Optional[SubscriptionContext]:
        return self._subscriptions.get(subscription_id)

    async def get_payment_context(self, payment_id: str) -> Optional[PaymentContext]:
        return self._payments.get(payment_id)

    async def ensure_payment_link(self, subscription_id: str) -> dict[str, Any]:
        if self.fail_payment_links:
            raise BillingError("billing_error", "payment link creation disabled")
        if subscription_id not in self._subscriptions:
            raise BillingError("billing_error", f"unknown subscription '{subscription_id}'")
        if subscription_id not in self._links:
            payment_id = f"pay_{uuid.uuid4().hex[:10]}"
            self._links[subscription_id] = {
                "checkout_url": f"https://pay.example.com/checkout/{payment_id}",
                "payment_id": payment_id,
            }
            logger.info("mock_payment_link_created", subscription_id=subscription_id, payment_id=payment_id)
        return dict(self._links[subscription_id])


def create_billing_connector(config: BillingConfig = None) -> BillingConnector:
    """Factory function to create the appropriate billing connector."""
    config = config or get_settings().billing
    if config.type == "rest" and config.base_url:
        return RESTBillingConnector(config)
    logger.warning("using_mock_billing", reason="no billing backend configured or base_url empty")
    return MockBillingConnector()
