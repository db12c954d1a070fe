"""Typed error hierarchy for the calendar sync engine.

Provider errors are raised by the provider adapter and interpreted by the
retry policy; the remaining types describe engine-level outcomes that the
orchestrator contains at account, mapping, or event granularity.
"""

from __future__ import annotations

import re


class CalendarSyncError(RuntimeError):
    """Base class for every error raised by the sync engine."""


class TokenRefreshError(CalendarSyncError):
    """Raised when an OAuth refresh token cannot be exchanged.

    Fatal for the owning account for the rest of the current pass.
    """

    def __init__(self, account_id: str, message: str) -> None:
        self.account_id = account_id
        super().__init__(f"Token refresh failed for account '{account_id}': {message}")


class ProviderError(CalendarSyncError):
    """Base class for failures reported by the calendar provider."""


class ProviderUnauthorized(ProviderError):
    """The provider rejected the access token (HTTP 401)."""


class ProviderNotFound(ProviderError):
    """The requested calendar or event does not exist at the provider."""


class ProviderRateLimited(ProviderError):
    """The provider throttled the request; ``retry_after`` is in seconds."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class ProviderTransient(ProviderError):
    """Network failure, timeout, or 5xx from the provider."""


class ProviderRequestError(ProviderError):
    """Non-retryable provider response that fits no other category."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(f"Calendar provider request failed ({status_code}): {message}")


class SyncTokenExpired(ProviderError):
    """The stored sync token is no longer accepted (HTTP 410 Gone)."""


class ReconciliationError(CalendarSyncError):
    """A single provider event could not be applied to the local store."""

    def __init__(self, provider_event_id: str | None, message: str) -> None:
        self.provider_event_id = provider_event_id
        super().__init__(f"Failed to reconcile event '{provider_event_id}': {message}")


class MappingNotFoundError(CalendarSyncError):
    """No calendar mapping matches the request."""


class DisabledMappingError(CalendarSyncError):
    """The calendar mapping exists but has sync disabled."""


class EventNotFoundError(CalendarSyncError):
    """No local event matches the given id for the user."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Calendar event not found: {event_id}")


_SECRET_KEYS = r"client_secret|refresh_token|access_token|token"


def redact_credentials(message: str) -> str:
    """Redact credential values from an error message before it is logged or stored."""
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\b(Bearer)\s+[A-Za-z0-9._~+/=-]+", r"\1 [REDACTED]", redacted)
    return redacted


def describe_error(exc: BaseException, *, limit: int = 500) -> str:
    """Render ``exc`` as a single-line, credential-free message."""
    raw = str(exc) or type(exc).__name__
    return " ".join(redact_credentials(raw).split())[:limit]
