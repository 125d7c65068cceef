"""
Error taxonomy shared by the API, the production job and the publisher.

`AppError` subclasses are request-level failures rendered by the API as
``{"error": message, "code": code}``. The remaining classes describe failures
of external calls (generators, transcoder, platforms) and are converted into
status + message updates by the production job and the publisher.
"""
from __future__ import annotations

import re

from fastapi import status


class AppError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "BAD_REQUEST"

    def __init__(self, message: str, code: str | None = None, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationFailed(AppError):
    code = "VALIDATION_ERROR"


class PrerequisiteMissing(AppError):
    code = "PREREQUISITE_MISSING"


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class Conflict(AppError):
    """Requested action is not allowed in the record's current state."""

    code = "INVALID_STATE"


class Unauthorized(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"


class RateLimited(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}

    def to_dict(self) -> dict:
        return {**super().to_dict(), "retryAfter": self.retry_after}


# ── External call failures ──────────────────────────────────


class ExternalError(Exception):
    """Base for failures of calls leaving the process."""


class TransientExternalError(ExternalError):
    """Timeout, 5xx, rate limit: safe to retry with backoff."""


class AuthError(ExternalError):
    """Missing, expired or rejected credential. Never retried automatically."""


class PlatformError(ExternalError):
    """Normalized failure reported by a platform adapter."""

    def __init__(self, platform: str, message: str):
        super().__init__(f"{platform}: {message}")
        self.platform = platform


class GenerationError(ExternalError):
    """A generator answered but returned nothing usable."""


class TransformError(ExternalError):
    """Transcoder exited with a non-zero status."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


# ── Credential sanitization ──────────────────────────────────

_SENSITIVE_PATTERNS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9\-_\.]+", re.IGNORECASE), "Bearer ***"),
    (re.compile(r"access_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "access_token=***"),
    (re.compile(r"refresh_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "refresh_token=***"),
    (re.compile(r"client_secret=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "client_secret=***"),
    (re.compile(r"key=[A-Za-z0-9\-_\.%]{16,}", re.IGNORECASE), "key=***"),
    # Generic long hex/base64 tokens (40+ chars)
    (re.compile(r"[A-Za-z0-9\-_]{40,}"), "***TOKEN***"),
]

MAX_ERROR_MESSAGE_LENGTH = 500


def sanitize_error(text: str | None, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str | None:
    """Strip credentials from an error text and bound its length."""
    if not text:
        return text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    if len(text) > limit:
        text = text[: limit - 1] + "…"
    return text
