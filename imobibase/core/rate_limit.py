"""Rate limiting using an in-process fixed window counter.

Keys are opaque strings: ``str(user_id)`` for the per-user limiter and
``tenant:<id>`` / ``ip:<addr>`` for the DPO tooling limiter. With more
than one API instance the counters are per-process; a shared store is
needed for a global limit.

Thread safety: asyncio.Lock per key ensures no races in a single process.
Windows that have rolled over are pruned once per window, so keys that
stop sending do not accumulate.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import defaultdict
from collections.abc import Collection
from dataclasses import dataclass, field

import structlog
from fastapi import HTTPException, Request, status

from imobibase.config import Settings, get_settings

log = structlog.get_logger(__name__)


@dataclass
class _WindowCounter:
    """Fixed window state for one key."""
    window_start: float = field(default_factory=time.monotonic)
    count: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class RateLimiter:
    """In-process rate limiter keyed by an arbitrary string."""

    def __init__(self, requests_per_minute: int, *, name: str = "default") -> None:
        self._rpm = requests_per_minute
        self._name = name
        self._window_seconds = 60.0
        self._counters: dict[str, _WindowCounter] = defaultdict(_WindowCounter)
        self._last_prune = time.monotonic()

    @property
    def limit(self) -> int:
        return self._rpm

    @property
    def tracked_keys(self) -> int:
        return len(self._counters)

    async def check(self, key: uuid.UUID | str) -> None:
        """Check and increment the counter for *key*.

        Raises HTTP 429 once the key has exceeded its limit.
        Does NOT raise if rate limiting is set to 0 (unlimited).
        """
        if self._rpm <= 0:
            return  # Unlimited

        self._prune_expired(time.monotonic())
        counter_key = str(key)
        counter = self._counters[counter_key]

        async with counter.lock:
            now = time.monotonic()
            elapsed = now - counter.window_start

            if elapsed >= self._window_seconds:
                counter.window_start = now
                counter.count = 0

            counter.count += 1

            if counter.count > self._rpm:
                retry_after = int(self._window_seconds - elapsed) + 1
                log.warning(
                    "rate_limit.exceeded",
                    limiter=self._name,
                    key=counter_key,
                    count=counter.count,
                    limit=self._rpm,
                )
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail="Muitas requisições. Tente novamente em instantes.",
                    headers={"Retry-After": str(retry_after)},
                )

    def _prune_expired(self, now: float) -> None:
        if now - self._last_prune < self._window_seconds:
            return
        self._last_prune = now
        # A locked counter has a waiter holding a reference to it
        expired = [
            key
            for key, counter in self._counters.items()
            if now - counter.window_start >= self._window_seconds and not counter.lock.locked()
        ]
        for key in expired:
            del self._counters[key]
        if expired:
            log.debug("rate_limit.pruned", limiter=self._name, keys=len(expired))

    def reset(self, key: uuid.UUID | str | None = None) -> None:
        """Reset one key, or every key when *key* is None."""
        if key is None:
            self._counters.clear()
            return
        self._counters.pop(str(key), None)


# Module-level singletons - initialized from settings
_rate_limiter: RateLimiter | None = None
_admin_rate_limiter: RateLimiter | None = None
_trusted_proxies: frozenset[str] = frozenset()


def init_rate_limiter(settings: Settings | None = None) -> RateLimiter:
    """Initialize the global limiters and the trusted proxy list from settings."""
    global _rate_limiter, _admin_rate_limiter, _trusted_proxies
    cfg = settings or get_settings()
    _rate_limiter = RateLimiter(cfg.rate_limit_per_minute, name="user")
    _admin_rate_limiter = RateLimiter(
        cfg.admin_compliance_rate_limit_per_minute, name="admin_compliance"
    )
    _trusted_proxies = frozenset(cfg.trusted_proxies)
    log.info(
        "rate_limiter.initialized",
        rpm=cfg.rate_limit_per_minute,
        admin_rpm=cfg.admin_compliance_rate_limit_per_minute,
        trusted_proxies=len(_trusted_proxies),
    )
    return _rate_limiter


def get_rate_limiter() -> RateLimiter:
    """FastAPI dependency - return the initialized per-user limiter."""
    if _rate_limiter is None:
        return init_rate_limiter()
    return _rate_limiter


def get_admin_rate_limiter() -> RateLimiter:
    """FastAPI dependency - return the DPO tooling limiter."""
    if _admin_rate_limiter is None:
        init_rate_limiter()
    assert _admin_rate_limiter is not None
    return _admin_rate_limiter


def client_ip(request: Request, trusted_proxies: Collection[str] | None = None) -> str | None:
    """Client address as seen by the socket, or by a trusted reverse proxy.

    X-Forwarded-For is client-controlled, so it is only read when the peer
    is a trusted proxy. The hops are then walked right to left and the
    first untrusted address wins.
    """
    trusted = _trusted_proxies if trusted_proxies is None else trusted_proxies
    peer = request.client.host if request.client is not None else None
    if peer is None or peer not in trusted:
        return peer

    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded:
        return peer
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return hops[0] if hops else peer


def admin_rate_limit_key(
    request: Request,
    tenant_id: uuid.UUID | str | None,
    trusted_proxies: Collection[str] | None = None,
) -> str:
    if tenant_id is not None:
        return f"tenant:{tenant_id}"
    return f"ip:{client_ip(request, trusted_proxies) or 'unknown'}"
