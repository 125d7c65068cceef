from __future__ import annotations

import hmac

from fastapi import Depends, Header

from .errors import Unauthorized
from .services.rate_limit import get_rate_limiter
from .settings import get_settings


def get_owner_id(x_owner_id: str | None = Header(default=None, alias="X-Owner-Id")) -> str:
    """Owner of the request, set by the authenticating proxy in front of the API."""
    if not x_owner_id or not x_owner_id.strip():
        raise Unauthorized("Authentication required", "UNAUTHORIZED")
    return x_owner_id.strip()


def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    """Bearer CRON_SECRET check for timer entry points.

    Without a configured secret the check only passes outside production.
    """
    settings = get_settings()
    secret = settings.cron_secret
    if not secret:
        if settings.environment == "production":
            raise Unauthorized("CRON_SECRET is not configured", "UNAUTHORIZED")
        return
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise Unauthorized("Unauthorized", "UNAUTHORIZED")


def rate_limit(endpoint: str):
    """Dependency counting the caller's requests against `endpoint`'s limit."""

    async def check(owner_id: str = Depends(get_owner_id)) -> None:
        if get_settings().rate_limit_enabled:
            await get_rate_limiter().hit(owner_id, endpoint)

    return Depends(check)
