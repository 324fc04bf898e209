"""
In-memory rate limiter for the auth endpoints.

Each (operation, identity) pair gets a fixed window counter. Exceeding the
window limit blocks the identity for the policy's block duration. The
response shape is the same whether or not the identity is known, so a caller
learns nothing beyond its own request frequency.
"""
import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple, Union

from auth_broker.utils.logging_utils import AuthEventType, auth_event_extra

logger = logging.getLogger(__name__)

_IP_HEADERS = ("cf-connecting-ip", "x-forwarded-for", "x-real-ip")


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window_seconds: float
    block_seconds: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0
    remaining: Optional[int] = None


@dataclass
class _Bucket:
    count: int
    reset_at: float
    blocked_until: Optional[float] = None


def client_identity(headers: Mapping[str, str], client_host: Optional[str] = None) -> str:
    """
    Build an opaque rate-limit key from the caller's address and user agent.

    The first hop of ``X-Forwarded-For`` is used when present.
    """
    address = None
    for header in _IP_HEADERS:
        value = headers.get(header)
        if value:
            address = value.split(",")[0].strip()
            break
    address = address or client_host or "unknown"
    user_agent = (headers.get("user-agent") or "unknown")[:100]
    fingerprint = f"{address}|{user_agent}"
    return hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()[:32]


class RateLimiter:
    """
    Fixed window rate limiter keyed by operation and client identity.

    Usage:
        limiter = RateLimiter(settings.rate_limit_policies())
        decision = await limiter.check_rate_limit("refresh", identity)
        if not decision.allowed:
            ...  # 429 with decision.retry_after_seconds
    """

    def __init__(
        self,
        policies: Mapping[str, Union[RateLimitPolicy, Mapping[str, float]]],
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policies: Dict[str, RateLimitPolicy] = {
            name: p if isinstance(p, RateLimitPolicy) else RateLimitPolicy(**p)
            for name, p in policies.items()
        }
        self.enabled = enabled
        self._clock = clock
        self._buckets: Dict[Tuple[str, str], _Bucket] = {}
        self._lock = asyncio.Lock()

    async def check_rate_limit(self, operation: str, identity: str) -> RateLimitDecision:
        """
        Count one attempt of ``operation`` by ``identity``.

        Returns:
            RateLimitDecision: ``allowed=False`` with a positive
            ``retry_after_seconds`` once the identity is over the limit.
        """
        policy = self.policies.get(operation)
        if not self.enabled or policy is None:
            return RateLimitDecision(allowed=True)

        key = (operation, identity)
        async with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)

            if bucket is not None and bucket.blocked_until is not None:
                if now < bucket.blocked_until:
                    retry_after = _ceil_seconds(bucket.blocked_until - now)
                    logger.warning(
                        "Rate limit block in effect",
                        extra=auth_event_extra(
                            AuthEventType.RATE_LIMITED,
                            operation=operation,
                            client=identity[:8] + "...",
                            retry_after=retry_after,
                        ),
                    )
                    return RateLimitDecision(allowed=False, retry_after_seconds=retry_after, remaining=0)
                bucket = None

            if bucket is None or now >= bucket.reset_at:
                bucket = _Bucket(count=0, reset_at=now + policy.window_seconds)
                self._buckets[key] = bucket

            bucket.count += 1

            if bucket.count > policy.max_requests:
                bucket.blocked_until = now + policy.block_seconds
                retry_after = _ceil_seconds(policy.block_seconds)
                logger.error(
                    "Rate limit exceeded - client blocked",
                    extra=auth_event_extra(
                        AuthEventType.SECURITY_VIOLATION,
                        operation=operation,
                        client=identity[:8] + "...",
                        request_count=bucket.count,
                        max_requests=policy.max_requests,
                    ),
                )
                return RateLimitDecision(allowed=False, retry_after_seconds=retry_after, remaining=0)

            remaining = policy.max_requests - bucket.count
            if remaining <= 2:
                logger.info(
                    "Rate limit warning - approaching limit",
                    extra={"operation": operation, "remaining": remaining},
                )
            return RateLimitDecision(allowed=True, remaining=remaining)

    async def cleanup(self) -> int:
        """Evict buckets whose window and block have both elapsed. Returns the count removed."""
        async with self._lock:
            now = self._clock()
            expired = [
                key for key, bucket in self._buckets.items()
                if now >= bucket.reset_at and (bucket.blocked_until is None or now >= bucket.blocked_until)
            ]
            for key in expired:
                del self._buckets[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} rate limit buckets")
        return len(expired)

    def status(self, operation: str, identity: str) -> Dict[str, Optional[float]]:
        """Read-only view of a bucket for diagnostics."""
        policy = self.policies.get(operation)
        bucket = self._buckets.get((operation, identity))
        now = self._clock()
        if policy is None:
            return {"remaining": None, "reset_in": None, "blocked_for": None}
        if bucket is None or (now >= bucket.reset_at and not _is_blocked(bucket, now)):
            return {"remaining": policy.max_requests, "reset_in": None, "blocked_for": None}
        return {
            "remaining": max(0, policy.max_requests - bucket.count),
            "reset_in": max(0.0, bucket.reset_at - now),
            "blocked_for": (bucket.blocked_until - now) if _is_blocked(bucket, now) else None,
        }


def _is_blocked(bucket: _Bucket, now: float) -> bool:
    return bucket.blocked_until is not None and now < bucket.blocked_until


def _ceil_seconds(value: float) -> int:
    return max(1, int(-(-value // 1)))
