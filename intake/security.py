"""Request guards for mutating routes: CSRF double-submit check and rate limiting."""
from __future__ import annotations

import logging
import secrets

from fastapi import Depends, Request

from .cache import CacheBackend, get_cache
from .config import settings
from .errors import CsrfTokenMismatch, RateLimitExceeded

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW = 60


def issue_csrf_token() -> str:
    return secrets.token_urlsafe(32)


async def verify_csrf(request: Request) -> None:
    """Reject browser requests whose header token does not match the cookie.

    Requests without the cookie (API clients that never fetched a token) pass.
    """
    cookie_token = request.cookies.get(settings.api.csrf_cookie_name)
    if cookie_token is None:
        return

    header_token = request.headers.get(settings.api.csrf_header_name) or ""
    if not secrets.compare_digest(cookie_token, header_token):
        logger.warning(
            "CSRF token mismatch",
            extra={"path": request.url.path, "client": _client_ip(request)},
        )
        raise CsrfTokenMismatch()


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def submission_rate_limit(
    request: Request,
    cache: CacheBackend = Depends(get_cache),
) -> None:
    """One-minute window per client IP, opened by its first request.

    The counter lives in the shared cache; its TTL is set on the first hit and
    kept by later increments.
    """
    key = f"rate_limit:submit:{_client_ip(request)}"

    hits = await cache.increment(key, 1, ttl=RATE_LIMIT_WINDOW)
    if hits > settings.api.rate_limit_per_minute:
        retry_after = RATE_LIMIT_WINDOW
        logger.warning(
            f"Submission rate limit exceeded ({hits} requests)",
            extra={"client": _client_ip(request), "retry_after": retry_after},
        )
        raise RateLimitExceeded(retry_after)
