"""Calendar provider adapter contract and the Google Calendar implementation.

Adapters are stateless with respect to credentials: every call receives an
explicit ``Credential``.  Retrying, token refresh, and timeouts belong to
``calsync.sync.retry``; adapters only translate HTTP outcomes into the typed
provider errors from ``calsync.sync.errors``.
"""

from __future__ import annotations

import abc
import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from calsync.sync.errors import (
    ProviderNotFound,
    ProviderRateLimited,
    ProviderRequestError,
    ProviderTransient,
    ProviderUnauthorized,
    SyncTokenExpired,
)
from calsync.sync.models import Credential, ProviderPage, TimeWindow, TokenGrant

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_PAGE_SIZE = 2500
_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


class CalendarProvider(abc.ABC):
    """Provider-agnostic surface the sync engine consumes."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier used in logs and metrics."""

    @abc.abstractmethod
    async def list_events(
        self,
        credential: Credential,
        calendar_id: str,
        *,
        sync_token: str | None = None,
        time_window: TimeWindow | None = None,
        page_token: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ProviderPage:
        """Return one page of raw events, either since ``sync_token`` or inside ``time_window``."""

    @abc.abstractmethod
    async def get_event(
        self, credential: Credential, calendar_id: str, event_id: str
    ) -> dict[str, Any]:
        """Return the raw provider payload for a single event."""

    @abc.abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        """Exchange ``refresh_token`` for a new access token."""

    async def shutdown(self) -> None:
        """Release provider-held resources."""


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return " ".join(f"{error_payload}: {description}".split())[:200]
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _google_error_reasons(response: httpx.Response) -> set[str]:
    try:
        payload = response.json()
    except ValueError:
        return set()
    if not isinstance(payload, dict) or not isinstance(payload.get("error"), dict):
        return set()
    reasons: set[str] = set()
    for entry in payload["error"].get("errors") or []:
        if isinstance(entry, dict) and isinstance(entry.get("reason"), str):
            reasons.add(entry["reason"])
    return reasons


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(seconds, 0.0)


def raise_for_google_status(response: httpx.Response, *, context: str) -> None:
    """Translate a non-2xx Google Calendar response into a typed provider error."""
    status = response.status_code
    if 200 <= status < 300:
        return
    message = f"{context}: {_safe_google_error_message(response)}"
    if status == 401:
        raise ProviderUnauthorized(message)
    if status == 404:
        raise ProviderNotFound(message)
    if status == 410:
        raise SyncTokenExpired(message)
    if status == 429 or (status == 403 and _google_error_reasons(response) & _RATE_LIMIT_REASONS):
        raise ProviderRateLimited(
            message, retry_after=_parse_retry_after(response.headers.get("Retry-After"))
        )
    if status >= 500:
        raise ProviderTransient(f"{message} (status {status})")
    raise ProviderRequestError(status_code=status, message=message)


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar v3 adapter over a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._api_base_url = api_base_url.rstrip("/")
        self._token_url = token_url

    @property
    def name(self) -> str:
        return "google"

    async def _get_json(
        self,
        credential: Credential,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        context: str,
    ) -> dict[str, Any]:
        try:
            response = await self._http_client.get(
                f"{self._api_base_url}{path}",
                params=params,
                headers={"Authorization": f"Bearer {credential.access_token}"},
            )
        except httpx.TimeoutException as exc:
            raise ProviderTransient(f"{context}: request timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderTransient(f"{context}: {exc}") from exc

        raise_for_google_status(response, context=context)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderTransient(f"{context}: provider returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderRequestError(
                status_code=response.status_code,
                message=f"{context}: unexpected JSON payload shape",
            )
        return payload

    async def list_events(
        self,
        credential: Credential,
        calendar_id: str,
        *,
        sync_token: str | None = None,
        time_window: TimeWindow | None = None,
        page_token: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ProviderPage:
        if page_size < 1:
            raise ValueError("page_size must be at least 1")

        params: dict[str, Any] = {
            "maxResults": min(page_size, DEFAULT_PAGE_SIZE),
            "singleEvents": "true",
            "showDeleted": "true",
        }
        if sync_token is not None:
            # Google rejects time bounds and ordering alongside a syncToken.
            params["syncToken"] = sync_token
        elif time_window is not None:
            params["timeMin"] = _google_rfc3339(time_window.start)
            params["timeMax"] = _google_rfc3339(time_window.end)
            params["orderBy"] = "updated"
        if page_token is not None:
            params["pageToken"] = page_token

        payload = await self._get_json(
            credential,
            f"/calendars/{quote(calendar_id, safe='')}/events",
            params=params,
            context=f"list events for calendar '{calendar_id}'",
        )

        items = payload.get("items")
        next_page_token = payload.get("nextPageToken")
        next_sync_token = payload.get("nextSyncToken")
        return ProviderPage(
            items=[item for item in items if isinstance(item, dict)]
            if isinstance(items, list)
            else [],
            next_page_token=next_page_token if isinstance(next_page_token, str) else None,
            next_sync_token=next_sync_token if isinstance(next_sync_token, str) else None,
        )

    async def get_event(
        self, credential: Credential, calendar_id: str, event_id: str
    ) -> dict[str, Any]:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        path = (
            f"/calendars/{quote(calendar_id, safe='')}"
            f"/events/{quote(normalized_event_id, safe='')}"
        )
        return await self._get_json(
            credential,
            path,
            context=f"get event '{normalized_event_id}'",
        )

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        try:
            response = await self._http_client.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise ProviderTransient(f"OAuth token refresh request failed: {exc}") from exc

        if response.status_code >= 500:
            raise ProviderTransient(
                f"OAuth token refresh failed ({response.status_code}): "
                f"{_safe_google_error_message(response)}"
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                status_code=response.status_code,
                message=f"OAuth token refresh failed: {_safe_google_error_message(response)}",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderTransient("OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise ProviderRequestError(
                status_code=response.status_code,
                message="OAuth token response is missing a non-empty access_token",
            )

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        rotated = payload.get("refresh_token")
        return TokenGrant(
            access_token=access_token.strip(),
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
            refresh_token=rotated.strip() if isinstance(rotated, str) and rotated.strip() else None,
        )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
