# app/infra/rate_limiter.py
from __future__ import annotations
import time
from collections import defaultdict
from threading import Lock
from typing import Callable, Optional

from fastapi import Request, HTTPException, status

from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryRateLimiter:
    """
    Simple in-memory rate limiter using sliding window.

    NOT horizontally scalable: each process holds its own window,
    so with N replicas the effective limit is N x max_requests.
    """

    def __init__(self, max_requests: int, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = Lock()

    def is_allowed(self, key: str) -> tuple[bool, Optional[int]]:
        """
        Check if request is allowed for the given key.

        Returns:
            (allowed, retry_after_seconds)
        """
        now = time.time()
        cutoff = now - self.window_seconds

        with self._lock:
            self._requests[key] = [
                ts for ts in self._requests[key] if ts > cutoff
            ]

            request_count = len(self._requests[key])

            if request_count >= self.max_requests:
                oldest = min(self._requests[key])
                retry_after = int(oldest + self.window_seconds - now) + 1

                logger.warning(
                    "Rate limit exceeded for key=%s", key,
                    extra={
                        "count": request_count,
                        "limit": self.max_requests,
                        "retry_after": retry_after,
                    }
                )
                return False, retry_after

            self._requests[key].append(now)
            return True, None

    def get_usage(self, key: str) -> dict:
        """Get current usage stats for a key"""
        now = time.time()
        cutoff = now - self.window_seconds

        with self._lock:
            recent = [ts for ts in self._requests[key] if ts > cutoff]
            return {
                "count": len(recent),
                "limit": self.max_requests,
                "window_seconds": self.window_seconds,
                "remaining": max(0, self.max_requests - len(recent)),
            }

    def cleanup(self, max_age_seconds: int = 3600) -> int:
        """
        Remove keys that haven't been used recently.
        Returns number of keys removed.
        """
        now = time.time()
        cutoff = now - max_age_seconds

        with self._lock:
            to_remove = [
                key for key, timestamps in self._requests.items()
                if not timestamps or max(timestamps) < cutoff
            ]
            for key in to_remove:
                del self._requests[key]

            if to_remove:
                logger.info(f"Rate limiter cleanup: removed {len(to_remove)} keys")

            return len(to_remove)


def client_ip(request: Request) -> str:
    """Client address; behind a trusted proxy the first X-Forwarded-For hop."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for and settings.trust_proxy_headers:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitDependency:
    """
    FastAPI dependency for rate limiting.

    ``key_func`` maps a request to its bucket (e.g. the authenticated actor);
    it may return None to fall back to the client IP.
    """

    EXEMPT_PATHS = ("/health", "/ready")

    def __init__(
        self,
        limiter: InMemoryRateLimiter,
        key_func: Optional[Callable[[Request], Optional[str]]] = None,
    ):
        self.limiter = limiter
        self.key_func = key_func

    async def __call__(self, request: Request) -> None:
        if request.url.path in self.EXEMPT_PATHS:
            return

        key = self.key_func(request) if self.key_func else None
        key = f"actor:{key}" if key else f"ip:{client_ip(request)}"

        allowed, retry_after = self.limiter.is_allowed(key)

        if not allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(retry_after)} if retry_after else None,
            )
