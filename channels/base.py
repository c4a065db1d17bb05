"""
Channel Adapters — Base infrastructure for outbound notification delivery.

Provides:
- ChannelError: structured error hierarchy
- CircuitBreaker: failure-counting breaker with half-open probe
- DeliveryStatus: outcome of an immediate send
- ChannelAdapter: abstract base wrapping every send with the breaker
"""
from __future__ import annotations

import abc
import time
import structlog
from enum import Enum
from typing import Any

from models.schemas import RenderedMessage, TemplateKind

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Synchronous circuit breaker with failure counting.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        if self.state == "half_open":
            self._close()
        else:
            self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)

    def _close(self):
        self._state = "closed"
        self._failure_count = 0

    def reset(self):
        self._close()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY STATUS
# ══════════════════════════════════════════════════════════════

class DeliveryStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER (abstract base)
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for delivery channels.

    Subclasses implement _do_send_text and _do_send_structured. The base
    class guards every send with the circuit breaker and turns any
    transport failure into a ChannelError.
    """

    name: str = "channel"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self._breaker = CircuitBreaker(failure_threshold, recovery_timeout)
        self.messages_sent = 0
        self.messages_failed = 0

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send_text(self, recipient: dict[str, Any], content: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def _do_send_structured(
        self, recipient: dict[str, Any], name: str, language: str, params: list[str],
    ) -> dict[str, Any]:
        ...

    # ── Public send ───────────────────────────────────────────

    async def send_now(self, message: RenderedMessage, recipient: dict[str, Any]) -> DeliveryStatus:
        """Deliver immediately. Raises ChannelError when delivery fails."""
        if self._breaker.is_open:
            self.messages_failed += 1
            raise CircuitOpenError(self.name)

        start = time.monotonic()
        try:
            if message.kind == TemplateKind.STRUCTURED:
                result = await self._do_send_structured(
                    recipient, message.structured_name or "", message.language or "",
                    list(message.ordered_params),
                )
            else:
                result = await self._do_send_text(recipient, message.content or "")
        except ChannelError:
            self._breaker.record_failure()
            self.messages_failed += 1
            raise
        except Exception as e:
            self._breaker.record_failure()
            self.messages_failed += 1
            raise ChannelError(str(e), self.name, retryable=True) from e

        self._breaker.record_success()
        self.messages_sent += 1
        logger.info("notification_sent",
                    channel=self.name,
                    kind=message.kind.value,
                    latency_ms=round((time.monotonic() - start) * 1000, 1),
                    channel_message_id=result.get("channel_message_id", ""))
        return DeliveryStatus.SENT

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.name,
            "circuit_breaker": self._breaker.stats,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
        }

    async def shutdown(self) -> None:
        pass
