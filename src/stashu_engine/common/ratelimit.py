"""Sliding-window rate limiting per client and route family."""

import logging
import time
from collections import OrderedDict, deque
from typing import Callable, Protocol

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from stashu_engine.common.config import StashuSettings
from stashu_engine.common.exceptions import TooManyRequestsError

logger = logging.getLogger(__name__)


def normalize_route(path: str) -> str:
    """Collapse dynamic segments: ``/api/pay/<id>/status/<quote>`` -> ``/api/pay``."""
    parts = [p for p in path.split("/") if p]
    return "/" + "/".join(parts[:2])


def client_ip(request: Request, trusted_proxy: bool) -> str:
    """Forwarded headers are only honoured behind a trusted proxy; otherwise all clients share a key."""
    if trusted_proxy:
        forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
        if forwarded:
            return forwarded
        real_ip = request.headers.get("x-real-ip", "").strip()
        if real_ip:
            return real_ip
    return "global"


class RateLimitStore(Protocol):
    def hit(self, key: str, limit: int, window: float, now: float) -> bool: ...

    def evict_expired(self, window: float, now: float) -> int: ...


class InMemoryRateLimitStore:
    """Per-key request logs, bounded to ``max_entries`` keys (oldest evicted first)."""

    def __init__(self, max_entries: int = 10_000):
        self.max_entries = max_entries
        self._log: OrderedDict[str, deque[float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._log)

    def hit(self, key: str, limit: int, window: float, now: float) -> bool:
        """Record a request. Returns False if it is over ``limit`` within ``window``."""
        stamps = self._log.get(key)
        if stamps is None:
            while len(self._log) >= self.max_entries:
                self._log.popitem(last=False)
            stamps = deque()
            self._log[key] = stamps

        cutoff = now - window
        while stamps and stamps[0] <= cutoff:
            stamps.popleft()
        if len(stamps) >= limit:
            return False
        stamps.append(now)
        return True

    def evict_expired(self, window: float, now: float) -> int:
        cutoff = now - window
        expired = [key for key, stamps in self._log.items() if not stamps or stamps[-1] <= cutoff]
        for key in expired:
            del self._log[key]
        return len(expired)


class RateLimiter:
    def __init__(
        self,
        settings: StashuSettings,
        store: RateLimitStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.store = store or InMemoryRateLimitStore(settings.rate_limit_max_entries)
        self.clock = clock

    def check(self, request: Request) -> None:
        route = normalize_route(request.url.path)
        key = f"{client_ip(request, self.settings.trusted_proxy)}:{route}"
        limit = self.settings.rate_limit_for(route)
        if not self.store.hit(key, limit, self.settings.rate_limit_window_seconds, self.clock()):
            logger.warning("Rate limit exceeded for %s", key)
            raise TooManyRequestsError()

    async def evict_expired(self) -> int:
        removed = self.store.evict_expired(self.settings.rate_limit_window_seconds, self.clock())
        if removed:
            logger.debug("Evicted %d expired rate-limit entries", removed)
        return removed


class RateLimitMiddleware:
    """ASGI middleware applying a RateLimiter to ``/api`` requests."""

    def __init__(self, app: ASGIApp, limiter: RateLimiter, prefix: str = "/api"):
        self.app = app
        self.limiter = limiter
        self.prefix = prefix

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not scope["path"].startswith(self.prefix):
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        try:
            self.limiter.check(request)
        except TooManyRequestsError as exc:
            response = JSONResponse(
                {"success": False, "error": exc.message, "code": exc.code},
                status_code=exc.status_code,
            )
            await response(scope, receive, send)
            return
        await self.app(scope, receive, send)
