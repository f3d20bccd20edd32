"""
Sync error taxonomy.

Adapters and the rate limiter raise these; the job executor catches them at
its boundary and turns them into a terminal job status. Only the retry
coordinator decides whether a failure becomes a future attempt, and it does
so by looking at ``reason`` / ``retryable``.

  TransientFailure  network errors, 5xx, 429          -> retry with backoff
  RateLimited       denied locally before any call    -> retry with backoff
  AuthFailure       invalid / expired credential      -> no retry, credential alert
  PermanentFailure  malformed request, bad payload    -> no retry, logged
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

# Failure reason codes stored on sync_jobs.failure_reason
REASON_TRANSIENT = "transient"
REASON_RATE_LIMITED = "rate_limited"
REASON_AUTH = "auth"
REASON_PERMANENT = "permanent"
REASON_UNEXPECTED = "unexpected_error"

RETRYABLE_REASONS = frozenset({REASON_TRANSIENT, REASON_RATE_LIMITED, REASON_UNEXPECTED})


class SyncError(Exception):
    """Base class for every failure surfaced by the sync core."""

    reason: str = REASON_UNEXPECTED
    retryable: bool = False

    def __init__(self, message: str, *, platform: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.platform = platform
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "message": self.message,
            "platform": self.platform,
            "retryable": self.retryable,
            **({"details": self.details} if self.details else {}),
        }


class TransientFailure(SyncError):
    reason = REASON_TRANSIENT
    retryable = True


class RateLimited(SyncError):
    reason = REASON_RATE_LIMITED
    retryable = True


class AuthFailure(SyncError):
    reason = REASON_AUTH
    retryable = False


class MissingCredential(AuthFailure):
    """No credential configured at all, as opposed to one that was rejected."""


class PermanentFailure(SyncError):
    reason = REASON_PERMANENT
    retryable = False


@dataclass
class ReconciliationAmbiguity:
    """Conflicting remote reports for one entity. Logged, never raised."""

    entity_id: str
    reported_statuses: list[str]
    chosen_status: str
    details: dict[str, Any] = field(default_factory=dict)


def is_retryable_reason(reason: str | None) -> bool:
    return reason in RETRYABLE_REASONS


def classify_http_error(exc: Exception, platform: str) -> SyncError:
    """Map an httpx exception onto the sync error taxonomy."""
    if isinstance(exc, SyncError):
        return exc

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        details = {"status_code": status, "url": str(exc.request.url)}
        message = _response_message(exc.response)
        if status == 429 or status >= 500:
            return TransientFailure(f"{platform} API error {status}: {message}", platform=platform, details=details)
        if status in (401, 403):
            return AuthFailure(f"{platform} rejected credentials: {message}", platform=platform, details=details)
        return PermanentFailure(f"{platform} API error {status}: {message}", platform=platform, details=details)

    if isinstance(exc, (httpx.TransportError, httpx.TimeoutException)):
        return TransientFailure(f"{platform} unreachable: {exc}", platform=platform)

    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return PermanentFailure(f"{platform} returned an unusable payload: {exc}", platform=platform)

    return TransientFailure(f"{platform} call failed: {exc}", platform=platform)


def _response_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.reason_phrase or response.text[:200]
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("error") or response.reason_phrase)
    return response.reason_phrase
