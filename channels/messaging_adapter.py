"""
Messaging Channel Adapter — Chatwoot-style conversation API.

Outbound flow per recipient:
  1. Reuse the recipient's conversation id if known
  2. Otherwise create a contact (falling back to search on conflict)
     and open a conversation in the configured inbox
  3. Post an outgoing message; structured templates go as
     `template_params` with positional `processed_params`

When no base URL is configured the adapter delivers to an in-memory
outbox instead, so the service stays runnable in development.
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ChannelAdapter, ChannelError
from config.settings import ChannelConfig, get_settings

logger = structlog.get_logger()


class MessagingAdapter(ChannelAdapter):

    name = "messaging"

    def __init__(self, config: ChannelConfig = None, **breaker_kwargs):
        super().__init__(**breaker_kwargs)
        self.config = config or get_settings().channel
        self.client: Optional[httpx.AsyncClient] = None
        self._conversations: dict[str, int] = {}     # recipient key → conversation id
        self.outbox: list[dict[str, Any]] = []       # mock deliveries

    @property
    def is_mock(self) -> bool:
        return not self.config.base_url

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                headers={
                    "api_access_token": self.config.api_token,
                    "content-type": "application/json",
                },
                timeout=self.config.timeout,
            )
        return self.client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> Any:
        client = await self._get_client()
        response = await client.request(method, f"/api/v1/accounts/{self.config.account_id}{path}", **kwargs)
        if response.status_code >= 400:
            raise ChannelError(
                f"{method} {path} failed: {response.status_code} {response.text[:200]}",
                self.name,
                retryable=response.status_code >= 500,
            )
        return response.json() if response.content else {}

    # ── Conversation bootstrap ────────────────────────────────

    @staticmethod
    def _recipient_key(recipient: dict[str, Any]) -> str:
        return str(recipient.get("email") or recipient.get("phone") or recipient.get("id") or "")

    async def _ensure_conversation(self, recipient: dict[str, Any]) -> int:
        if recipient.get("conversationId"):
            return int(recipient["conversationId"])

        key = self._recipient_key(recipient)
        if key and key in self._conversations:
            return self._conversations[key]

        contact_id, source_id = await self._ensure_contact(recipient)
        body: dict[str, Any] = {"inbox_id": int(self.config.inbox_id or 0), "contact_id": contact_id}
        if source_id:
            body["source_id"] = source_id
        created = await self._request("POST", "/conversations", json=body)
        conversation_id = int(created["id"])
        if key:
            self._conversations[key] = conversation_id
        logger.info("conversation_created", contact_id=contact_id, conversation_id=conversation_id)
        return conversation_id

    async def _ensure_contact(self, recipient: dict[str, Any]) -> tuple[int, Optional[str]]:
        body = {
            "inbox_id": int(self.config.inbox_id or 0),
            "name": recipient.get("name"),
            "email": recipient.get("email"),
            "phone_number": recipient.get("phone"),
        }
        try:
            created = await self._request("POST", "/contacts", json={k: v for k, v in body.items() if v is not None})
            payload = created.get("payload", {})
            source_id = (payload.get("contact_inbox") or {}).get("source_id")
            return int(payload["contact"]["id"]), source_id
        except (ChannelError, KeyError, TypeError, ValueError) as e:
            logger.info("contact_create_failed_searching", error=str(e))

        query = recipient.get("email") or recipient.get("phone") or ""
        if query:
            found = await self._request("GET", "/contacts/search", params={"q": query})
            items = found.get("payload") or []
            if items and items[0].get("id"):
                return int(items[0]["id"]), None
        raise ChannelError("contact not found/created", self.name)

    # ── Send hooks ────────────────────────────────────────────

    async def _do_send_text(self, recipient: dict[str, Any], content: str) -> dict[str, Any]:
        if self.is_mock:
            return self._mock_deliver(recipient, {"content": content})

        conversation_id = await self._ensure_conversation(recipient)
        sent = await self._request(
            "POST", f"/conversations/{conversation_id}/messages",
            json={"content": content, "message_type": "outgoing", "content_type": "text"},
        )
        return {"channel_message_id": str(sent.get("id", ""))}

    async def _do_send_structured(
        self, recipient: dict[str, Any], name: str, language: str, params: list[str],
    ) -> dict[str, Any]:
        template_params = {
            "name": name,
            "language": language,
            "processed_params": {str(i): value for i, value in enumerate(params, start=1)},
        }
        if self.is_mock:
            return self._mock_deliver(recipient, {"template_params": template_params})

        conversation_id = await self._ensure_conversation(recipient)
        sent = await self._request(
            "POST", f"/conversations/{conversation_id}/messages",
            json={
                "content": " ".join(params),
                "message_type": "outgoing",
                "content_type": "text",
                "template_params": template_params,
            },
        )
        return {"channel_message_id": str(sent.get("id", ""))}

    def _mock_deliver(self, recipient: dict[str, Any], body: dict[str, Any]) -> dict[str, Any]:
        msg_id = f"mock_{uuid.uuid4().hex[:12]}"
        self.outbox.append({"id": msg_id, "recipient": dict(recipient), **body})
        logger.info("mock_message_delivered", to=self._recipient_key(recipient), msg_id=msg_id)
        return {"channel_message_id": msg_id}

    async def shutdown(self) -> None:
        if self.client:
            await self.client.aclose()
