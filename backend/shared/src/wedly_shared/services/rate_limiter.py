"""Fixed-window rate limiting keyed by endpoint class and caller fingerprint.

The check-and-increment of a key is a single critical section in every
store: a lock around the in-memory map, or a conditional update on the
``rate-limits`` table. The in-memory store is only correct for a single
instance; multi-instance deployments set ``RATE_LIMIT_BACKEND=dynamodb``.
"""

import asyncio
import contextlib
import hashlib
import math
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from wedly_shared.config import Settings, get_settings
from wedly_shared.models.context import RequestContext
from wedly_shared.models.errors import ErrorCategory, ErrorSeverity, create_error
from wedly_shared.models.rate_limit import (
    RATE_LIMIT_PRESETS,
    EndpointClass,
    KeyStrategy,
    RateLimitConfig,
    RateLimitEntry,
    RateLimitResult,
)
from wedly_shared.services.dynamodb import DocumentStore, get_document_store
from wedly_shared.utils.logging import get_logger

logger = get_logger(__name__)

RATE_LIMITS_TABLE = "rate-limits"

SWEEP_INTERVAL_SECONDS = 5 * 60

# User-agent marker of the payment provider's webhook deliveries
TRUSTED_USER_AGENT_MARKER = "Stripe/"

# Extra seconds a DynamoDB counter outlives its window before TTL removes it
TTL_GRACE_SECONDS = 60


def now_ms() -> int:
    return int(time.time() * 1000)


class RateLimitStore(Protocol):
    """Storage of per-key window counters."""

    def hit(self, key: str, window_ms: int, max_requests: int, now: int) -> RateLimitResult:
        """Count one request against ``key``, or reject it once the ceiling is reached."""
        ...

    def release(self, key: str, reset_time_ms: int, now: int) -> None:
        """Give back one counted request, only while the window ending at ``reset_time_ms`` is live."""
        ...

    def sweep(self, now: int) -> int:
        """Drop expired windows; returns how many were removed."""
        ...


class MemoryRateLimitStore:
    """Thread-safe in-process counters for single-instance deployments."""

    def __init__(self) -> None:
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, window_ms: int, max_requests: int, now: int) -> RateLimitResult:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expired(now):
                entry = RateLimitEntry(count=1, window_start_ms=now, reset_time_ms=now + window_ms)
                self._entries[key] = entry
                allowed = True
            elif entry.count >= max_requests:
                allowed = False
            else:
                entry.count += 1
                allowed = True

            return RateLimitResult(
                allowed=allowed,
                limit=max_requests,
                remaining=max(0, max_requests - entry.count),
                reset_time_ms=entry.reset_time_ms,
                key=key,
            )

    def release(self, key: str, reset_time_ms: int, now: int) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if (
                entry is not None
                and entry.reset_time_ms == reset_time_ms
                and not entry.expired(now)
                and entry.count > 0
            ):
                entry.count -= 1

    def sweep(self, now: int) -> int:
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expired(now)]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def get(self, key: str) -> RateLimitEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            return entry.model_copy() if entry else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class DynamoDBRateLimitStore:
    """Counters on the ``rate-limits`` table, shared by every instance.

    Table key is ``rate_key``; ``expires_at`` (epoch seconds) is the TTL
    attribute, so there is nothing to sweep.
    """

    # Bound on how often one hit re-reads after losing a window-reset race
    MAX_CONTENTION_ROUNDS = 3

    def __init__(self, store: DocumentStore | None = None) -> None:
        self._store = store or get_document_store()

    def hit(self, key: str, window_ms: int, max_requests: int, now: int) -> RateLimitResult:
        for _ in range(self.MAX_CONTENTION_ROUNDS):
            # Count against the current window while it is live and under the ceiling
            attrs = self._store.update_item(
                RATE_LIMITS_TABLE,
                {"rate_key": key},
                "SET #count = #count + :one",
                {":one": 1, ":now": now, ":max": max_requests},
                {"#count": "count"},
                condition_expression=(
                    "attribute_exists(rate_key) AND reset_time_ms >= :now AND #count < :max"
                ),
            )
            if attrs is not None:
                count = int(attrs["count"])
                return RateLimitResult(
                    allowed=True,
                    limit=max_requests,
                    remaining=max(0, max_requests - count),
                    reset_time_ms=int(attrs["reset_time_ms"]),
                    key=key,
                )

            # No live window: start one unless another instance just did
            reset_time = now + window_ms
            started = self._store.put_item(
                RATE_LIMITS_TABLE,
                {
                    "rate_key": key,
                    "count": 1,
                    "window_start_ms": now,
                    "reset_time_ms": reset_time,
                    "expires_at": reset_time // 1000 + TTL_GRACE_SECONDS,
                },
                condition_expression="attribute_not_exists(rate_key) OR reset_time_ms < :now",
                expression_attribute_values={":now": now},
            )
            if started:
                return RateLimitResult(
                    allowed=True,
                    limit=max_requests,
                    remaining=max_requests - 1,
                    reset_time_ms=reset_time,
                    key=key,
                )

            item = self._store.get_item(RATE_LIMITS_TABLE, {"rate_key": key})
            if item and int(item["reset_time_ms"]) >= now and int(item["count"]) >= max_requests:
                return RateLimitResult(
                    allowed=False,
                    limit=max_requests,
                    remaining=0,
                    reset_time_ms=int(item["reset_time_ms"]),
                    key=key,
                )

        logger.warning("Rate limit counter for %s stayed contended, rejecting request", key)
        return RateLimitResult(
            allowed=False,
            limit=max_requests,
            remaining=0,
            reset_time_ms=now + window_ms,
            key=key,
        )

    def release(self, key: str, reset_time_ms: int, now: int) -> None:
        self._store.update_item(
            RATE_LIMITS_TABLE,
            {"rate_key": key},
            "SET #count = #count - :one",
            {":one": 1, ":zero": 0, ":now": now, ":reset": reset_time_ms},
            {"#count": "count"},
            condition_expression="#count > :zero AND reset_time_ms = :reset AND reset_time_ms >= :now",
        )

    def sweep(self, now: int) -> int:
        return 0


def client_ip(headers: Mapping[str, str]) -> str:
    """Best-effort caller IP: first forwarded-for hop, then x-real-ip."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return headers.get("x-real-ip") or "unknown"


def ip_user_agent_fingerprint(headers: Mapping[str, str], context: RequestContext | None = None) -> str:
    ip = context.caller_ip if context and context.caller_ip != "unknown" else client_ip(headers)
    user_agent = headers.get("user-agent") or "unknown"
    return f"{ip}:{user_agent[:50]}"


def identity_fingerprint(headers: Mapping[str, str], context: RequestContext | None = None) -> str:
    """Fingerprint of the bearer credential, falling back to IP and user agent."""
    authorization = headers.get("authorization") or ""
    if authorization.startswith("Bearer ") and authorization[7:].strip():
        digest = hashlib.sha256(authorization[7:].strip().encode()).hexdigest()[:16]
        return f"user:{digest}"
    return ip_user_agent_fingerprint(headers, context)


_FINGERPRINTS: dict[KeyStrategy, Callable[[Mapping[str, str], RequestContext | None], str]] = {
    KeyStrategy.IDENTITY: identity_fingerprint,
    KeyStrategy.IP_USER_AGENT: ip_user_agent_fingerprint,
}


def is_trusted_source(headers: Mapping[str, str]) -> bool:
    return TRUSTED_USER_AGENT_MARKER in (headers.get("user-agent") or "")


def get_rate_limit_headers(result: RateLimitResult, now: int | None = None) -> dict[str, str]:
    """Standard rate-limit response headers for a check result."""
    current = now if now is not None else now_ms()
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(math.ceil(result.reset_time_ms / 1000)),
        "Retry-After": str(result.retry_after_seconds(current)),
    }


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


class RateLimiter:
    """Admission by fixed-window counters per ``{endpoint class}:{fingerprint}``.

    Usage:
        limiter = RateLimiter(MemoryRateLimitStore())
        result = await limiter.enforce(EndpointClass.WEBHOOK, request.headers, context)
        ...
        await limiter.record_outcome(EndpointClass.WEBHOOK, result, success=True)
    """

    def __init__(
        self,
        store: RateLimitStore,
        presets: Mapping[EndpointClass, RateLimitConfig] | None = None,
        clock: Callable[[], int] = now_ms,
        sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self._presets = dict(presets or RATE_LIMIT_PRESETS)
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def store(self) -> RateLimitStore:
        return self._store

    def config_for(self, endpoint_class: EndpointClass, headers: Mapping[str, str]) -> RateLimitConfig:
        """Preset of the endpoint class; trusted sources get twice the ceiling."""
        config = self._presets[endpoint_class]
        if is_trusted_source(headers):
            return config.model_copy(update={"max_requests": config.max_requests * 2})
        return config

    def key_for(
        self,
        endpoint_class: EndpointClass,
        config: RateLimitConfig,
        headers: Mapping[str, str],
        context: RequestContext | None = None,
    ) -> str:
        fingerprint = _FINGERPRINTS[config.key_strategy](headers, context)
        return f"{endpoint_class.value}:{fingerprint}"

    async def check(
        self,
        endpoint_class: EndpointClass,
        headers: Mapping[str, str],
        context: RequestContext | None = None,
    ) -> RateLimitResult:
        """Count this request and report whether it is within the limit.

        Args:
            endpoint_class: Class whose preset applies
            headers: Request headers (any case)
            context: Request context; receives the rate-limit headers

        Returns:
            RateLimitResult for the request's key
        """
        normalized = _lower_headers(headers)
        config = self.config_for(endpoint_class, normalized)
        key = self.key_for(endpoint_class, config, normalized, context)
        now = self._clock()

        result = await asyncio.to_thread(
            self._store.hit, key, config.window_ms, config.max_requests, now
        )
        if context is not None:
            context.rate_limit_headers = get_rate_limit_headers(result, now)
        return result

    async def enforce(
        self,
        endpoint_class: EndpointClass,
        headers: Mapping[str, str],
        context: RequestContext | None = None,
    ) -> RateLimitResult:
        """Like ``check`` but raises a RATE_LIMIT AppError when rejected.

        Raises:
            AppError: RATE_LIMIT/MEDIUM/429 with a retry-after estimate
        """
        result = await self.check(endpoint_class, headers, context)
        if result.allowed:
            return result

        retry_after = result.retry_after_seconds(self._clock())
        logger.warning(
            "Rate limit exceeded for %s (limit %d)",
            result.key,
            result.limit,
            extra=context.log_fields() if context else None,
        )
        raise create_error(
            f"Rate limit exceeded for endpoint class {endpoint_class.value}",
            ErrorCategory.RATE_LIMIT,
            ErrorSeverity.MEDIUM,
            429,
            f"Too many requests. Please try again in {retry_after} seconds.",
            context={
                "endpoint_class": endpoint_class.value,
                "limit": result.limit,
                "reset_time_ms": result.reset_time_ms,
                "retry_after_seconds": retry_after,
            },
            retryable=True,
        )

    async def record_outcome(
        self,
        endpoint_class: EndpointClass,
        result: RateLimitResult,
        *,
        success: bool,
    ) -> None:
        """Release the counted hit when the preset skips this kind of outcome.

        The release applies only to the window the hit was counted in; once
        that window has reset, the new window's count is left alone. Skip
        flags come from the class preset, which the trusted-source ceiling
        does not change.
        """
        if not result.allowed:
            return
        config = self._presets[endpoint_class]
        if (success and config.skip_successful_requests) or (
            not success and config.skip_failed_requests
        ):
            await asyncio.to_thread(
                self._store.release, result.key, result.reset_time_ms, self._clock()
            )

    def sweep(self) -> int:
        removed = self._store.sweep(self._clock())
        if removed:
            logger.debug("Swept %d expired rate limit entries", removed)
        return removed

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            await asyncio.to_thread(self.sweep)

    def start_sweeper(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever())
            logger.info("Rate limit sweeper started (every %ss)", self._sweep_interval)

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None
        logger.info("Rate limit sweeper stopped")


def build_rate_limiter(settings: Settings | None = None, **kwargs: Any) -> RateLimiter:
    """Rate limiter backed by the store the deployment selected."""
    settings = settings or get_settings()
    store: RateLimitStore
    if settings.rate_limit_backend == "dynamodb":
        store = DynamoDBRateLimitStore()
    else:
        store = MemoryRateLimitStore()
    return RateLimiter(store, **kwargs)

