"""FastAPI dependency functions shared across routers.

Identity
--------
Callers present an identity token (``{owner_id}:{tier}:{hmac}``) either as
``Authorization: Bearer <token>`` or in the ``session`` cookie. A missing
or invalid token is a 401.

Rate limiting
-------------
``POST /api/ai/generate`` is rate limited per owner with an in-memory
sliding window of one hour. Limits come from ``rate_limits_per_hour``:

    FREE=100   PRO=1000   ENTERPRISE=10000   (requests per hour)

Every rate-limited response gets two extra headers:

    X-RateLimit-Remaining   Requests left in the current window
    X-RateLimit-Reset       Unix timestamp when the window resets (UTC)
"""

import logging
import math
import time
from collections import defaultdict
from threading import Lock
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Response, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from vtry_jobs.auth.identity import Identity
from vtry_jobs.services.gateway import RequestGateway
from vtry_jobs.services.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

_WINDOW_SECONDS = 3600.0

# ── Sliding-window store ──────────────────────────────────────────────────────
_generate_store: dict[str, list[float]] = defaultdict(list)
_rate_limit_lock = Lock()


def reset_rate_limits() -> None:
    """Forget every recorded request (used between tests)."""
    with _rate_limit_lock:
        _generate_store.clear()


def _sliding_window_check(
    store: dict,
    key: str,
    limit: int,
    response: Response | None = None,
) -> None:
    """Sliding-window rate limiter (thread-safe via ``_rate_limit_lock``).

    Raises HTTP 429 if ``key`` has made ``limit`` requests within the last
    window.
    """
    now = time.time()
    window_start = now - _WINDOW_SECONDS

    with _rate_limit_lock:
        store[key] = [t for t in store[key] if t >= window_start]
        current_count = len(store[key])

        remaining = max(0, limit - current_count - 1)
        reset_at = math.ceil((store[key][0] if store[key] else now) + _WINDOW_SECONDS)

        if response is not None:
            response.headers["X-RateLimit-Limit"] = str(limit)
            response.headers["X-RateLimit-Remaining"] = str(remaining)
            response.headers["X-RateLimit-Reset"] = str(reset_at)

        if current_count >= limit:
            logger.warning(
                "Rate limit exceeded",
                extra={"identity": key, "limit_per_hour": limit, "current_count": current_count},
            )
            raise HTTPException(
                status_code=429,
                detail={
                    "code": "RateLimitExceeded",
                    "message": f"Rate limit exceeded: {limit} requests per hour.",
                },
                headers={
                    "Retry-After": str(max(1, reset_at - math.floor(now))),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(reset_at),
                },
            )

        store[key].append(now)


# ── Application context ───────────────────────────────────────────────────────


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_gateway(request: Request) -> RequestGateway:
    return request.app.state.gateway


# ── Identity ──────────────────────────────────────────────────────────────────

_bearer_scheme = HTTPBearer(auto_error=False)


def get_identity(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(_bearer_scheme)] = None,
) -> Identity:
    """FastAPI dependency: return the caller's Identity or raise 401."""
    token = credentials.credentials if credentials is not None else request.cookies.get("session")
    if not token:
        raise HTTPException(
            status_code=401,
            detail={"code": "Unauthenticated", "message": "Missing identity token. Use: Bearer <token>"},
        )

    identity = get_orchestrator(request).identity.verify(token)
    if identity is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "Unauthenticated", "message": "Invalid identity token"},
        )
    return identity


def rate_limit_generate(
    request: Request,
    response: Response,
    identity: Identity = Depends(get_identity),
) -> None:
    """FastAPI dependency: per-owner hourly limit on generation requests."""
    limits = get_orchestrator(request).settings.rate_limits_per_hour
    limit = limits.get(identity.tier, limits.get("FREE", 100))
    _sliding_window_check(_generate_store, identity.owner_id, limit, response)
    logger.debug(
        "Generate rate limit checked",
        extra={"owner_id": identity.owner_id, "limit_per_hour": limit},
    )
