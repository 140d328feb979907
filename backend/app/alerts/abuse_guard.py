"""
abuse_guard.py — Rate limiting and device fingerprinting for submissions.

Counting is delegated to ``limits``: a moving-window limiter over either
in-process memory or Redis, selected by RATE_LIMIT_BACKEND. An attempt is
admitted while fewer than ``max_hits`` admitted attempts fall inside the
last ``window_seconds``. Rejected attempts are not recorded, so a client
hammering the button does not extend its own lock-out. Expired windows
are evicted by the storage itself.

═══════════════════════════════════════════════════════════════════════════
POLICIES
═══════════════════════════════════════════════════════════════════════════

    Policy            Max    Window     Notes
    ───────────────   ────   ────────   ───────────────────────────────
    emergency_alert   3      60 s       alert submission
    registration      5      15 min     account sign-up
    login             10     15 min     only failed attempts count
    api               100    15 min     general operator reads

Policies with ``skip_successful`` only test the window on ``hit``; the
attempt is recorded by ``record_outcome(..., success=False)``.

═══════════════════════════════════════════════════════════════════════════
CALLER KEY
═══════════════════════════════════════════════════════════════════════════

    1. X-Device-Fingerprint header, when the client sends one
    2. otherwise the client IP address

The stored ``device_fingerprint`` on an alert is the header value or a
16-hex-char SHA-256 digest of user-agent + IP. Neither identifies a
person; both exist only to rate-limit.
"""

from __future__ import annotations

import hashlib
import logging
import math
import time
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from limits import RateLimitItem, RateLimitItemPerMinute
from limits.aio.storage import MemoryStorage, Storage
from limits.aio.strategies import MovingWindowRateLimiter
from limits.storage import storage_from_string

from backend.app.core.config import settings
from backend.app.core.errors import RateLimitError

logger = logging.getLogger(__name__)

FINGERPRINT_HEADER = "x-device-fingerprint"


# ═══════════════════════════════════════════════════════════════════════════
# Policies
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RateLimitPolicy:
    """Per-purpose limit; ``limit`` carries the count and window."""
    name: str
    limit: RateLimitItem
    message: str
    skip_successful: bool = False

    @property
    def max_hits(self) -> int:
        return self.limit.amount

    @property
    def window_seconds(self) -> int:
        return self.limit.get_expiry()


EMERGENCY_ALERT = "emergency_alert"
REGISTRATION = "registration"
LOGIN = "login"
API = "api"

DEFAULT_POLICIES: Dict[str, RateLimitPolicy] = {
    EMERGENCY_ALERT: RateLimitPolicy(
        EMERGENCY_ALERT, RateLimitItemPerMinute(3),
        "Too many emergency alerts. Please wait before sending another.",
    ),
    REGISTRATION: RateLimitPolicy(
        REGISTRATION, RateLimitItemPerMinute(5, 15),
        "Too many registration attempts. Please try again after 15 minutes.",
    ),
    LOGIN: RateLimitPolicy(
        LOGIN, RateLimitItemPerMinute(10, 15),
        "Too many login attempts. Please try again after 15 minutes.",
        skip_successful=True,
    ),
    API: RateLimitPolicy(
        API, RateLimitItemPerMinute(100, 15),
        "Too many requests. Please try again later.",
    ),
}


@dataclass(frozen=True)
class RateLimitDecision:
    """Admission result; feeds the RateLimit-* response headers."""
    policy: str
    limit: int
    remaining: int
    reset_after: int  # seconds until the oldest counted hit expires

    def headers(self) -> Dict[str, str]:
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_after),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Guard
# ═══════════════════════════════════════════════════════════════════════════

class AbuseGuard:
    """Admits or rejects attempts per policy and caller key."""

    def __init__(
        self,
        storage: Optional[Storage] = None,
        policies: Optional[Mapping[str, RateLimitPolicy]] = None,
        *,
        prefix: str = "",
    ) -> None:
        self._storage = storage if storage is not None else MemoryStorage()
        self._limiter = MovingWindowRateLimiter(self._storage)
        self._policies = dict(policies or DEFAULT_POLICIES)
        self._prefix = prefix

    @property
    def storage(self) -> Storage:
        return self._storage

    def policy(self, name: str) -> RateLimitPolicy:
        try:
            return self._policies[name]
        except KeyError:
            raise KeyError(f"Unknown rate-limit policy: {name}") from None

    def _identifiers(self, policy: RateLimitPolicy, caller_key: str) -> Tuple[str, ...]:
        if self._prefix:
            return self._prefix, policy.name, caller_key
        return policy.name, caller_key

    async def _decision(self, policy: RateLimitPolicy, identifiers: Tuple[str, ...]) -> RateLimitDecision:
        stats = await self._limiter.get_window_stats(policy.limit, *identifiers)
        return RateLimitDecision(
            policy=policy.name,
            limit=policy.max_hits,
            remaining=max(0, stats.remaining),
            reset_after=max(1, math.ceil(stats.reset_time - time.time())),
        )

    async def hit(self, policy_name: str, caller_key: str) -> RateLimitDecision:
        """Record one attempt; raises RateLimitError when over the limit."""
        policy = self.policy(policy_name)
        identifiers = self._identifiers(policy, caller_key)
        if policy.skip_successful:
            admitted = await self._limiter.test(policy.limit, *identifiers)
        else:
            admitted = await self._limiter.hit(policy.limit, *identifiers)
        decision = await self._decision(policy, identifiers)

        if not admitted:
            logger.warning(
                "Rate limit hit: policy=%s key=%s retry_after=%ds",
                policy.name, caller_key, decision.reset_after,
                extra={"caller_key": caller_key},
            )
            raise RateLimitError(policy.message, retry_after=decision.reset_after, policy=policy.name)
        return decision

    async def record_outcome(self, policy_name: str, caller_key: str, *, success: bool) -> None:
        """Count a failed attempt on policies that skip successes."""
        policy = self.policy(policy_name)
        if policy.skip_successful and not success:
            await self._limiter.hit(policy.limit, *self._identifiers(policy, caller_key))

    async def remaining(self, policy_name: str, caller_key: str) -> int:
        policy = self.policy(policy_name)
        return (await self._decision(policy, self._identifiers(policy, caller_key))).remaining

    async def admit_alert(self, caller_key: str) -> RateLimitDecision:
        return await self.hit(EMERGENCY_ALERT, caller_key)


def build_abuse_guard(backend_name: Optional[str] = None) -> AbuseGuard:
    """Guard wired to the configured counter storage."""
    backend_name = (backend_name or settings.RATE_LIMIT_BACKEND).lower()
    if backend_name == "redis":
        logger.info("Abuse guard using Redis counters")
        storage = storage_from_string(f"async+{settings.REDIS_URL}")
    elif backend_name == "memory":
        storage = MemoryStorage()
    else:
        raise ValueError(f"Unknown RATE_LIMIT_BACKEND: {backend_name}")
    return AbuseGuard(storage, prefix=settings.RATE_LIMIT_PREFIX)


# ═══════════════════════════════════════════════════════════════════════════
# ═══════════════════════════════════════════════════════════════════════════
# Fingerprinting
# ═══════════════════════════════════════════════════════════════════════════

def caller_key(headers: Mapping[str, str], client_ip: Optional[str]) -> str:
    """Rate-limit key: client-supplied fingerprint, else the network address."""
    supplied = (headers.get(FINGERPRINT_HEADER) or "").strip()
    return supplied or (client_ip or "unknown")


def device_fingerprint(
    user_agent: Optional[str],
    client_ip: Optional[str],
    supplied: Optional[str] = None,
) -> str:
    if supplied and supplied.strip():
        return supplied.strip()[:128]
    raw = f"{user_agent or ''}{client_ip or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def hash_campus_token(token: Optional[str], secret: Optional[str] = None) -> Optional[str]:
    if not token:
        return None
    secret = settings.CAMPUS_TOKEN_SECRET if secret is None else secret
    return hashlib.sha256(f"{token}{secret}".encode("utf-8")).hexdigest()
