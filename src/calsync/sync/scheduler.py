"""Background scheduling of periodic sync passes and proactive token refresh.

Three loops run while the scheduler is started:

- an incremental pass over every user with enabled mappings (default 15 min),
- a full windowed pass over the same users (default 6 h),
- a token sweep that refreshes access tokens expiring within the lead time
  (default 5 min) so passes rarely hit an expired credential.

Jobs share a semaphore bounding concurrent work.  A job that raises is
retried with exponential backoff (30 s, 60 s, ... capped at 5 min); mapping
failures inside a pass are already contained by the orchestrator and do
not count as job failures.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TypeVar

from calsync.sync.errors import TokenRefreshError
from calsync.sync.models import SyncResult, SyncType
from calsync.sync.orchestrator import SyncOrchestrator
from calsync.sync.store import SyncStore
from calsync.sync.tokens import TokenManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

TOKEN_SWEEP_INTERVAL_S = 60


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class SchedulerSettings:
    incremental_interval_s: float = 900
    full_interval_s: float = 21600
    token_refresh_lead_s: float = 300
    token_sweep_interval_s: float = TOKEN_SWEEP_INTERVAL_S
    max_concurrent_jobs: int = 3
    retry_attempts: int = 3
    retry_base_delay_s: float = 30.0
    retry_max_delay_s: float = 300.0

    def retry_delay(self, retry_index: int) -> float:
        return min(self.retry_base_delay_s * (2**retry_index), self.retry_max_delay_s)


class SyncScheduler:
    """Owns the periodic sync and token-refresh background tasks."""

    def __init__(
        self,
        store: SyncStore,
        orchestrator: SyncOrchestrator,
        tokens: TokenManager,
        settings: SchedulerSettings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._tokens = tokens
        self._settings = settings or SchedulerSettings()
        self._sleep = sleep
        self._clock = clock
        self._semaphore = asyncio.Semaphore(self._settings.max_concurrent_jobs)
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        """Start the background loops; a second call is a no-op."""
        if self._tasks:
            logger.warning("Sync scheduler already running")
            return
        s = self._settings
        self._tasks = [
            asyncio.create_task(
                self._loop("incremental", s.incremental_interval_s, self.run_incremental_pass)
            ),
            asyncio.create_task(self._loop("full", s.full_interval_s, self.run_full_pass)),
            asyncio.create_task(
                self._loop("token-refresh", s.token_sweep_interval_s, self.refresh_expiring_tokens)
            ),
        ]
        logger.info(
            "Started sync scheduler: incremental=%ss full=%ss token_lead=%ss concurrency=%d",
            s.incremental_interval_s,
            s.full_interval_s,
            s.token_refresh_lead_s,
            s.max_concurrent_jobs,
        )

    async def stop(self) -> None:
        """Cancel the background loops and wait for them to finish."""
        if not self._tasks:
            return
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Sync scheduler stopped")

    async def _loop(
        self, name: str, interval_s: float, job: Callable[[], Awaitable[object]]
    ) -> None:
        try:
            while True:
                await self._sleep(interval_s)
                try:
                    await job()
                except Exception:
                    logger.exception("Scheduled %s job failed", name)
        except asyncio.CancelledError:
            logger.debug("Scheduler loop %s cancelled", name)
            raise

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def run_incremental_pass(self) -> dict[str, SyncResult]:
        return await self._sync_all_users(SyncType.INCREMENTAL)

    async def run_full_pass(self) -> dict[str, SyncResult]:
        return await self._sync_all_users(SyncType.FULL)

    async def _sync_all_users(self, sync_type: SyncType) -> dict[str, SyncResult]:
        user_ids = await self._store.list_sync_users()
        if sync_type is SyncType.FULL:
            run = self._orchestrator.full_sync
        else:
            run = self._orchestrator.incremental_sync

        outcomes = await asyncio.gather(
            *(
                self._run_job(
                    f"{sync_type} sync for user {user_id}",
                    lambda user_id=user_id: run(user_id, trigger="scheduler"),
                )
                for user_id in user_ids
            ),
            return_exceptions=True,
        )
        results: dict[str, SyncResult] = {}
        for user_id, outcome in zip(user_ids, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                # Logged by _run_job; other users are unaffected.
                continue
            results[user_id] = outcome
        logger.info(
            "Scheduled %s pass: %d of %d user(s) synced", sync_type, len(results), len(user_ids)
        )
        return results

    async def refresh_expiring_tokens(self) -> int:
        """Refresh every token expiring within the lead time; returns the refreshed count."""
        lead_s = self._settings.token_refresh_lead_s
        deadline = self._clock() + timedelta(seconds=lead_s)
        expiring = await self._store.list_tokens_expiring_before(deadline)
        refreshed = 0
        for token in expiring:
            try:
                async with self._semaphore:
                    await self._tokens.refresh(token.account_id, min_validity_s=lead_s)
            except TokenRefreshError as exc:
                # Already persisted on the token row; the next sweep tries again.
                logger.warning(
                    "Proactive refresh failed for account %s: %s", token.account_id, exc
                )
                continue
            refreshed += 1
        if expiring:
            logger.info(
                "Proactively refreshed %d of %d expiring token(s)", refreshed, len(expiring)
            )
        return refreshed

    async def _run_job(self, description: str, job: Callable[[], Awaitable[T]]) -> T:
        attempts = max(1, self._settings.retry_attempts)
        failures = 0
        while True:
            try:
                async with self._semaphore:
                    return await job()
            except Exception as exc:
                failures += 1
                if failures >= attempts:
                    logger.error("%s failed after %d attempt(s): %s", description, attempts, exc)
                    raise
                delay = self._settings.retry_delay(failures - 1)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.0fs: %s",
                    description,
                    failures,
                    attempts,
                    delay,
                    exc,
                )
            await self._sleep(delay)
