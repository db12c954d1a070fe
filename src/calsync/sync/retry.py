"""Authenticated, bounded-retry execution of provider calls.

Every provider call made by the engine goes through ``ProviderCaller.call``,
which obtains a credential from the ``TokenManager``, enforces a per-call
timeout, and retries with an explicit loop:

- ``ProviderUnauthorized``: refresh the token once and retry.
- ``ProviderRateLimited``: wait for the provider's retry-after hint
  (exponential backoff when absent).
- ``ProviderTransient`` / timeout: exponential backoff.

Rate-limit and transient retries share one attempt budget.  Every other
error propagates unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from calsync.core.metrics import SyncMetrics, sync_metrics
from calsync.sync.errors import ProviderRateLimited, ProviderTransient, ProviderUnauthorized
from calsync.sync.models import Credential
from calsync.sync.tokens import TokenManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 60.0
    timeout_s: float = 30.0

    def backoff(self, retry_index: int) -> float:
        return min(self.backoff_cap_s, self.backoff_base_s * (2**retry_index))


class ProviderCaller:
    """Runs provider operations with credentials, timeouts, and bounded retries."""

    def __init__(
        self,
        tokens: TokenManager,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: SyncMetrics = sync_metrics,
    ) -> None:
        self._tokens = tokens
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._metrics = metrics

    @property
    def tokens(self) -> TokenManager:
        return self._tokens

    async def call(
        self,
        account_id: str,
        operation: Callable[[Credential], Awaitable[T]],
        *,
        description: str = "provider call",
    ) -> T:
        policy = self._policy
        credential = await self._tokens.get_valid_token(account_id)
        refreshed = False
        failures = 0

        while True:
            try:
                return await asyncio.wait_for(operation(credential), timeout=policy.timeout_s)
            except ProviderUnauthorized:
                if refreshed:
                    raise
                refreshed = True
                self._metrics.record_retry("unauthorized")
                logger.info("Provider rejected credential during %s; refreshing once", description)
                credential = await self._tokens.refresh(account_id, rejected=credential)
                continue
            except ProviderRateLimited as exc:
                failures += 1
                if failures >= policy.max_attempts:
                    raise
                delay = (
                    min(exc.retry_after, policy.backoff_cap_s)
                    if exc.retry_after is not None
                    else policy.backoff(failures - 1)
                )
                reason = "rate_limited"
            except ProviderTransient:
                failures += 1
                if failures >= policy.max_attempts:
                    raise
                delay = policy.backoff(failures - 1)
                reason = "transient"
            except TimeoutError as exc:
                failures += 1
                if failures >= policy.max_attempts:
                    raise ProviderTransient(
                        f"{description} timed out after {policy.timeout_s:.1f}s "
                        f"({failures} attempts)"
                    ) from exc
                delay = policy.backoff(failures - 1)
                reason = "timeout"

            self._metrics.record_retry(reason)
            logger.warning(
                "Retrying %s after %s in %.1fs (attempt %d/%d)",
                description,
                reason,
                delay,
                failures,
                policy.max_attempts,
            )
            await self._sleep(delay)
