"""
Channel Adapters — Base infrastructure for the messaging transport.

Provides:
- ChannelError: structured error hierarchy
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with half-open probe
- ChannelMetrics: send/fail/latency tracking
- MessageDeduplicator / InputSanitizer: inbound hygiene
- MessagingChannel: abstract outbound/inbound interface; every outbound
  call goes through rate limiting, circuit breaker, retry and metrics
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from typing import Any, Awaitable, Callable, Optional

from models.schemas import ButtonOption, InboundMessage, ListSection

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


class RateLimitedError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Rate limit exceeded for {channel}", channel, retryable=True)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


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
    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
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
            self._open()

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "failure_count": self._failure_count}


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks send, failure and latency metrics for one channel."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.messages_received: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            self._latencies = self._latencies[-500:]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            self._errors = self._errors[-50:]

    def record_inbound(self):
        self.messages_received += 1

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "received": self.messages_received,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  MESSAGE DEDUPLICATOR
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL-based seen-set. WhatsApp re-delivers webhooks it thinks were missed."""

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 5000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        self._prune()
        if key in self._seen:
            return True
        self._seen[key] = time.monotonic()
        return False

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]
        if len(self._seen) > self.max_size:
            oldest = sorted(self._seen, key=self._seen.get)[: len(self._seen) - self.max_size]
            for k in oldest:
                del self._seen[k]


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    def __init__(self, max_length: int = 4096):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(
            c for c in content if c in ("\n", "\t", "\r") or (ord(c) >= 32)
        )
        if len(content) > self.max_length:
            content = content[: self.max_length]
        return content.strip()


# ══════════════════════════════════════════════════════════════
#  MESSAGING CHANNEL — Abstract Base
# ══════════════════════════════════════════════════════════════

class MessagingChannel(abc.ABC):
    """
    Base class for the messaging transport.

    Subclasses implement the send_* operations by calling `_guarded`, which
    wraps the actual API call with rate limiting, the circuit breaker,
    retries for retryable ChannelErrors, and metrics.
    """

    channel_name: str = ""
    max_retries: int = 3

    def __init__(self, rate_per_second: float = 0.0, burst: int = 20):
        self._breaker = CircuitBreaker()
        self._rate_limiter: Optional[TokenBucketRateLimiter] = None
        if rate_per_second > 0:
            self._rate_limiter = TokenBucketRateLimiter(rate=rate_per_second, burst=burst)
        self._metrics = ChannelMetrics(self.channel_name)
        self._deduplicator = MessageDeduplicator()
        self._sanitizer = InputSanitizer()

    # ── Outbound interface ────────────────────────────────────

    @abc.abstractmethod
    async def send_text(self, to: str, text: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def send_buttons(
        self,
        to: str,
        body: str,
        buttons: list[ButtonOption],
        header: str = None,
        footer: str = None,
    ) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def send_list(
        self,
        to: str,
        body: str,
        sections: list[ListSection],
        button_label: str,
        header: str = None,
        footer: str = None,
    ) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def send_audio(self, to: str, audio_path: str) -> dict[str, Any]:
        ...

    async def download_media(self, media_id: str) -> tuple[bytes, str]:
        """Returns (content, mime_type)."""
        raise ChannelError("Media download not supported", self.channel_name)

    async def mark_read(self, message_id: str) -> None:
        pass

    # ── Resilience wrapper ────────────────────────────────────

    async def _guarded(self, operation: str, call: Callable[[], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
        if self._rate_limiter and not await self._rate_limiter.acquire(timeout=10.0):
            self._metrics.record_failure("rate_limited")
            raise RateLimitedError(self.channel_name)

        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(self.channel_name)

        start = time.monotonic()
        for attempt in range(self.max_retries):
            try:
                result = await call()
            except ChannelError as e:
                self._breaker.record_failure()
                if not e.retryable or attempt == self.max_retries - 1:
                    self._metrics.record_failure(str(e))
                    logger.error("channel_send_failed",
                                 channel=self.channel_name,
                                 operation=operation,
                                 attempts=attempt + 1,
                                 error=str(e))
                    raise
                await asyncio.sleep(min(1.0 * (2 ** attempt), 10.0))
                continue

            self._breaker.record_success()
            self._metrics.record_send((time.monotonic() - start) * 1000)
            return result
        raise ChannelError(f"{operation} failed", self.channel_name)

    # ── Inbound ───────────────────────────────────────────────

    async def handle_inbound(self, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        """Parse a webhook payload, dropping re-deliveries and cleaning text."""
        messages = []
        for msg in self._parse_inbound(raw_payload):
            if msg.message_id and self._deduplicator.is_duplicate(msg.message_id):
                logger.info("inbound_duplicate_dropped",
                            channel=self.channel_name, message_id=msg.message_id)
                continue
            msg.body = self._sanitizer.sanitize(msg.body)
            self._metrics.record_inbound()
            messages.append(msg)
        return messages

    def _parse_inbound(self, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        return []

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_name,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass
