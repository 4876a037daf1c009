"""
Messaging Gateway — base infrastructure for every WhatsApp provider client.

Provides:
- GatewayError: structured error hierarchy (transient vs permanent)
- normalize_gateway_error: raw provider text → stable operator-facing message
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with a half-open trial call
- GatewayMetrics: per-connection send/fail/latency tracking
- MessagingGateway: the send(OutboundMessage) → DeliveryReceipt contract
- ResilientGateway: wraps any gateway with rate limiting, breaker, tenacity
  retries of transient failures, and metrics
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from typing import Any, Optional

from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from config.settings import GatewayConfig
from models.schemas import DeliveryReceipt, OutboundMessage

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class GatewayError(Exception):
    """Base exception for all gateway operations."""

    def __init__(self, message: str, connection_id: str = "", retryable: bool = False):
        self.connection_id = connection_id
        self.retryable = retryable
        super().__init__(message)


class TransientGatewayError(GatewayError):
    """Timeouts, throttling, provider 5xx. Retried with backoff."""

    def __init__(self, message: str, connection_id: str = ""):
        super().__init__(message, connection_id, retryable=True)


class PermanentGatewayError(GatewayError):
    """Invalid number, rejected payload, revoked credentials. Never retried."""

    def __init__(self, message: str, connection_id: str = ""):
        super().__init__(message, connection_id, retryable=False)


class RateLimitedError(TransientGatewayError):
    def __init__(self, connection_id: str = ""):
        super().__init__(f"Rate limit exceeded for {connection_id}", connection_id)


class CircuitOpenError(TransientGatewayError):
    def __init__(self, connection_id: str = ""):
        super().__init__(f"Circuit breaker open for {connection_id}", connection_id)


# (needles, message); first match wins, needles are lower-case
_ERROR_MESSAGES: list[tuple[tuple[str, ...], str]] = [
    (("not on whatsapp", "not a whatsapp", "not registered", "invalid number",
      "recipient phone number not in allowed list", "131026"),
     "Number is not on WhatsApp"),
    (("connection closed", "disconnected", "not connected", "connection lost"),
     "WhatsApp connection is closed"),
    (("timeout", "timed out"), "Timed out while sending"),
    (("rate limit", "too many requests", "429", "130429", "throttl"),
     "Rate limited by the provider, try again later"),
    (("blocked", "spam", "131031"), "Number blocked or flagged as spam"),
    (("media", "download"), "Could not load the media attachment"),
    (("unauthorized", "access token", "401", "190"), "Invalid or expired gateway credentials"),
    (("no content",), "Template has no content"),
]


def normalize_gateway_error(message: str) -> str:
    """Map a raw provider/transport error to a stable operator-facing message."""
    if not message:
        return "Unknown error"
    lowered = message.lower()
    for needles, friendly in _ERROR_MESSAGES:
        if any(n in lowered for n in needles):
            return friendly
    return message[:500]


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait = min(1.0 / max(self.rate, 0.001), remaining)
            await asyncio.sleep(wait)

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Failure-counting circuit breaker, one per connection.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    Only transient failures count; a bad phone number says nothing about
    the health of the connection.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

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
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", failures=self._failure_count)

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0


# ══════════════════════════════════════════════════════════════
#  GATEWAY METRICS
# ══════════════════════════════════════════════════════════════

class GatewayMetrics:
    """Tracks per-connection send, failure and latency metrics."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.retries: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "retries": self.retries,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  MESSAGING GATEWAY — Abstract Base
# ══════════════════════════════════════════════════════════════

class MessagingGateway(abc.ABC):
    """
    The only contract the engine has with a WhatsApp provider.

    send() returns a receipt or raises TransientGatewayError /
    PermanentGatewayError. Anything else escaping a provider client is a bug.
    """

    @abc.abstractmethod
    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        ...

    async def close(self) -> None:
        pass


class ResilientGateway(MessagingGateway):
    """
    Wraps a provider gateway with per-connection rate limiting, a circuit
    breaker, bounded exponential-backoff retries of transient failures
    (tenacity) and metrics. Permanent failures surface on the first attempt.
    """

    def __init__(self, inner: MessagingGateway, config: Optional[GatewayConfig] = None):
        self.inner = inner
        self.config = config or GatewayConfig()
        self._limiters: dict[str, TokenBucketRateLimiter] = {}
        self._breakers: dict[str, CircuitBreaker] = {}
        self._metrics: dict[str, GatewayMetrics] = {}

    def _limiter(self, connection_id: str) -> TokenBucketRateLimiter:
        if connection_id not in self._limiters:
            self._limiters[connection_id] = TokenBucketRateLimiter(
                rate=self.config.rate_per_second, burst=self.config.burst,
            )
        return self._limiters[connection_id]

    def _breaker(self, connection_id: str) -> CircuitBreaker:
        return self._breakers.setdefault(connection_id, CircuitBreaker())

    def metrics(self, connection_id: str) -> GatewayMetrics:
        return self._metrics.setdefault(connection_id, GatewayMetrics(connection_id))

    async def _attempt(self, message: OutboundMessage) -> DeliveryReceipt:
        cid = message.connection_id
        if not await self._limiter(cid).acquire(timeout=10.0):
            raise RateLimitedError(cid)
        breaker = self._breaker(cid)
        if breaker.is_open:
            raise CircuitOpenError(cid)
        try:
            receipt = await self.inner.send(message)
        except TransientGatewayError:
            breaker.record_failure()
            raise
        breaker.record_success()
        return receipt

    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        metrics = self.metrics(message.connection_id)
        start = time.monotonic()
        retryer = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.max_attempts)),
            wait=wait_exponential(multiplier=self.config.backoff_base, max=self.config.backoff_max),
            retry=retry_if_exception_type(TransientGatewayError),
            reraise=True,
        )
        try:
            async for attempt in retryer:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        metrics.retries += 1
                        logger.info("gateway_send_retry",
                                    connection_id=message.connection_id,
                                    attempt=attempt.retry_state.attempt_number)
                    receipt = await self._attempt(message)
        except GatewayError as e:
            metrics.record_failure(str(e))
            logger.warning("gateway_send_failed",
                           connection_id=message.connection_id,
                           to=message.to, retryable=e.retryable, error=str(e))
            raise
        metrics.record_send((time.monotonic() - start) * 1000)
        return receipt

    async def close(self) -> None:
        await self.inner.close()
