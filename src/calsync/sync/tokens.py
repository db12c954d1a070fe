"""OAuth credential lifecycle per connected calendar account.

``TokenManager`` hands out valid ``Credential`` values, refreshing them when
they are about to expire.  Refreshes are single-flight per account: callers
queue on a per-account lock and re-read the stored token once they hold it,
so a refresh completed by another caller is reused instead of spending the
refresh token twice.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from calsync.core.metrics import SyncMetrics, sync_metrics
from calsync.sync.errors import (
    ProviderError,
    ProviderTransient,
    TokenRefreshError,
    describe_error,
)
from calsync.sync.locks import KeyedLocks
from calsync.sync.models import Credential, OAuthToken, TokenGrant
from calsync.sync.provider import CalendarProvider
from calsync.sync.store import SyncStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_SKEW_SECONDS = 60.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TokenManager:
    """Owns refresh, retry, and error bookkeeping for stored OAuth tokens."""

    def __init__(
        self,
        store: SyncStore,
        provider: CalendarProvider,
        *,
        refresh_skew_s: float = DEFAULT_REFRESH_SKEW_SECONDS,
        max_attempts: int = 3,
        backoff_base_s: float = 1.0,
        timeout_s: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
        metrics: SyncMetrics = sync_metrics,
    ) -> None:
        self._store = store
        self._provider = provider
        self._refresh_skew_s = refresh_skew_s
        self._max_attempts = max(1, max_attempts)
        self._backoff_base_s = backoff_base_s
        self._timeout_s = timeout_s
        self._sleep = sleep
        self._clock = clock
        self._metrics = metrics
        self._locks = KeyedLocks()

    async def _load(self, account_id: str) -> OAuthToken:
        token = await self._store.get_token(account_id)
        if token is None:
            raise TokenRefreshError(account_id, "no stored OAuth credentials")
        return token

    async def get_valid_token(self, account_id: str) -> Credential:
        """Return a credential that is valid for at least the refresh skew."""
        token = await self._load(account_id)
        if not token.expires_within(self._refresh_skew_s, now=self._clock()):
            return token.to_credential()
        return await self.refresh(account_id)

    async def refresh(
        self,
        account_id: str,
        *,
        rejected: Credential | None = None,
        min_validity_s: float | None = None,
    ) -> Credential:
        """Refresh the account's access token, coalescing concurrent callers.

        ``rejected`` is the credential the provider just refused; if the stored
        token has already moved on from it, the stored token is returned.
        Without ``rejected``, a stored token valid for ``min_validity_s``
        (default: the refresh skew) is returned as-is.
        """
        async with self._locks.exclusive(account_id):
            token = await self._load(account_id)
            if rejected is not None:
                if token.access_token != rejected.access_token:
                    logger.debug("Reusing token refreshed concurrently for account %s", account_id)
                    return token.to_credential()
            else:
                validity = self._refresh_skew_s if min_validity_s is None else min_validity_s
                if not token.expires_within(validity, now=self._clock()):
                    return token.to_credential()
            return await self._exchange(token)

    async def _exchange(self, token: OAuthToken) -> Credential:
        try:
            grant = await self._request_grant(token.refresh_token)
        except ProviderError as exc:
            message = describe_error(exc)
            now = self._clock()
            failed = token.model_copy(
                update={
                    "error_count": token.error_count + 1,
                    "last_error": message,
                    "last_error_at": now,
                }
            )
            await self._store.save_token(failed)
            self._metrics.record_token_refresh(success=False)
            logger.warning(
                "Token refresh failed for account %s (errors=%d): %s",
                token.account_id,
                failed.error_count,
                message,
            )
            raise TokenRefreshError(token.account_id, message) from exc

        now = self._clock()
        refreshed = token.model_copy(
            update={
                "access_token": grant.access_token,
                "refresh_token": grant.refresh_token or token.refresh_token,
                # Never move expiry backwards, even if the provider reports a shorter lifetime.
                "expires_at": max(grant.expires_at, token.expires_at),
                "token_refresh_count": token.token_refresh_count + 1,
                "last_token_refresh": now,
                "error_count": 0,
                "last_error": None,
            }
        )
        await self._store.save_token(refreshed)
        self._metrics.record_token_refresh(success=True)
        logger.info(
            "Refreshed access token for account %s (refresh_count=%d)",
            token.account_id,
            refreshed.token_refresh_count,
        )
        return refreshed.to_credential()

    async def _request_grant(self, refresh_token: str) -> TokenGrant:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(
                    self._provider.refresh_token(refresh_token), timeout=self._timeout_s
                )
            except (ProviderTransient, TimeoutError) as exc:
                attempt += 1
                if attempt >= self._max_attempts:
                    if isinstance(exc, TimeoutError):
                        raise ProviderTransient("OAuth token refresh timed out") from exc
                    raise
                delay = self._backoff_base_s * (2 ** (attempt - 1))
                logger.warning(
                    "Transient token refresh failure, retrying in %.1fs (attempt %d/%d)",
                    delay,
                    attempt,
                    self._max_attempts,
                )
                await self._sleep(delay)
