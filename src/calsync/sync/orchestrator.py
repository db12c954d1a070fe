"""Sync orchestration across a user's calendar mappings.

The orchestrator drives full, incremental, single-event, and webhook passes.
Each mapping pass:

1. takes the mapping's lock (passes on one mapping never overlap),
2. re-reads the mapping under the lock,
3. pages through provider events, reconciling each one,
4. auto-resolves the mapping's pending conflicts when its policy allows,
5. persists the new sync token only after the page loop completed,
6. appends a ``SyncLog`` entry whatever the outcome.

Failures are contained per mapping; a ``TokenRefreshError`` additionally
skips the remaining mappings of the same account for the current pass.
The partial counts of a failed pass are still reported to the caller.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from calsync.core.metrics import SyncMetrics, sync_metrics
from calsync.core.telemetry import get_tracer
from calsync.sync.conflicts import ConflictResolver
from calsync.sync.errors import (
    EventNotFoundError,
    ProviderNotFound,
    ReconciliationError,
    SyncTokenExpired,
    TokenRefreshError,
    describe_error,
)
from calsync.sync.locks import MappingLocks
from calsync.sync.models import (
    CalendarMapping,
    ConflictPolicy,
    SyncLog,
    SyncResult,
    SyncStatus,
    SyncType,
    TimeWindow,
)
from calsync.sync.provider import DEFAULT_PAGE_SIZE, CalendarProvider
from calsync.sync.reconciler import EventReconciler
from calsync.sync.retry import ProviderCaller
from calsync.sync.store import SyncStore

logger = logging.getLogger(__name__)

SYNC_IN_PROGRESS_MESSAGE = "Sync already in progress for this calendar"
MAPPING_UNAVAILABLE_MESSAGE = "Calendar mapping not found or sync disabled"
TOKEN_EXPIRED_MESSAGE = "Sync token expired; performed a full windowed sync"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class SyncSettings:
    window_past_days: int = 30
    window_future_days: int = 365
    page_size: int = DEFAULT_PAGE_SIZE
    lock_wait_s: float = 0.0


# A pass body pages through provider data and returns the next sync token, if any.
_PassBody = Callable[[CalendarMapping, SyncType, SyncResult], Awaitable[str | None]]


class SyncOrchestrator:
    """Runs sync passes over calendar mappings with per-mapping isolation."""

    def __init__(
        self,
        store: SyncStore,
        provider: CalendarProvider,
        caller: ProviderCaller,
        reconciler: EventReconciler,
        resolver: ConflictResolver,
        *,
        locks: MappingLocks | None = None,
        settings: SyncSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
        metrics: SyncMetrics = sync_metrics,
    ) -> None:
        self._store = store
        self._provider = provider
        self._caller = caller
        self._reconciler = reconciler
        self._resolver = resolver
        self._locks = locks or MappingLocks()
        self._settings = settings or SyncSettings()
        self._clock = clock
        self._metrics = metrics

    @property
    def locks(self) -> MappingLocks:
        return self._locks

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def full_sync(
        self, user_id: str, account_id: str | None = None, *, trigger: str = "api"
    ) -> SyncResult:
        """Windowed full pass over every enabled mapping of the user."""
        return await self._sync_user(user_id, account_id, SyncType.FULL, trigger)

    async def incremental_sync(
        self, user_id: str, account_id: str | None = None, *, trigger: str = "api"
    ) -> SyncResult:
        """Token-driven pass over every enabled mapping of the user."""
        return await self._sync_user(user_id, account_id, SyncType.INCREMENTAL, trigger)

    async def sync_mapping(
        self,
        mapping_id: str,
        *,
        sync_type: SyncType = SyncType.INCREMENTAL,
        trigger: str = "api",
    ) -> SyncResult:
        """Run one pass for a single mapping; never raises for sync failures."""
        result, _ = await self._run_mapping(mapping_id, sync_type, trigger, self._page_pass)
        return result

    async def sync_single_event(
        self, user_id: str, event_id: str, *, trigger: str = "api"
    ) -> SyncResult:
        """Re-fetch and reconcile exactly one local event from the provider.

        Raises
        ------
        EventNotFoundError
            If the user has no active event with ``event_id``.
        """
        event = await self._store.get_event(user_id, event_id)
        if event is None:
            raise EventNotFoundError(event_id)

        async def _single_event_pass(
            mapping: CalendarMapping,
            sync_type: SyncType,
            result: SyncResult,
        ) -> str | None:
            try:
                payload = await self._caller.call(
                    mapping.account_id,
                    lambda credential: self._provider.get_event(
                        credential, mapping.provider_calendar_id, event.provider_event_id
                    ),
                    description=f"get event {event.provider_event_id}",
                )
            except ProviderNotFound:
                # Gone at the provider: reconcile as a cancellation.
                payload = {"id": event.provider_event_id, "status": "cancelled"}
            await self._apply(mapping, payload, result)
            return None

        result, _ = await self._run_mapping(
            event.mapping_id,
            SyncType.SINGLE_EVENT,
            trigger,
            _single_event_pass,
            checkpoint=False,
        )
        return result

    # ------------------------------------------------------------------
    # User-level fan-out
    # ------------------------------------------------------------------

    async def _sync_user(
        self,
        user_id: str,
        account_id: str | None,
        sync_type: SyncType,
        trigger: str,
    ) -> SyncResult:
        started = time.monotonic()
        mappings = await self._store.list_mappings(user_id, account_id=account_id)
        total = SyncResult()
        failed_accounts: set[str] = set()

        for mapping in mappings:
            if mapping.account_id in failed_accounts:
                logger.warning(
                    "Skipping mapping %s: credentials for account %s failed this pass",
                    mapping.id,
                    mapping.account_id,
                )
                total.errors_encountered += 1
                continue
            mapping_result, credentials_failed = await self._run_mapping(
                mapping.id, sync_type, trigger, self._page_pass
            )
            total.merge(mapping_result)
            if credentials_failed:
                failed_accounts.add(mapping.account_id)

        if not mappings:
            total.message = "No enabled calendar mappings"
        total.sync_duration = int((time.monotonic() - started) * 1000)
        logger.info(
            "%s sync for user %s finished: mappings=%d processed=%d errors=%d",
            sync_type,
            user_id,
            len(mappings),
            total.events_processed,
            total.errors_encountered,
        )
        return total

    # ------------------------------------------------------------------
    # Mapping pass
    # ------------------------------------------------------------------

    async def _run_mapping(
        self,
        mapping_id: str,
        sync_type: SyncType,
        trigger: str,
        body: _PassBody,
        *,
        checkpoint: bool = True,
    ) -> tuple[SyncResult, bool]:
        """Run one locked pass; the flag is True when the account's credentials failed."""
        async with self._locks.hold(mapping_id, wait_s=self._settings.lock_wait_s) as acquired:
            if not acquired:
                logger.info("Sync already in progress for mapping %s; skipping", mapping_id)
                self._metrics.record_pass(sync_type, SyncStatus.SKIPPED, 0)
                return SyncResult(in_progress=True, message=SYNC_IN_PROGRESS_MESSAGE), False

            mapping = await self._store.get_mapping(mapping_id)
            if mapping is None or not mapping.sync_enabled:
                return SyncResult(message=MAPPING_UNAVAILABLE_MESSAGE), False

            with (
                structlog.contextvars.bound_contextvars(
                    user_id=mapping.user_id,
                    mapping_id=mapping.id,
                    sync_type=str(sync_type),
                ),
                get_tracer().start_as_current_span("calsync.sync_mapping") as span,
            ):
                span.set_attribute("calsync.mapping_id", mapping.id)
                span.set_attribute("calsync.sync_type", str(sync_type))
                return await self._run_locked(mapping, sync_type, trigger, body, checkpoint)

    async def _run_locked(
        self,
        mapping: CalendarMapping,
        sync_type: SyncType,
        trigger: str,
        body: _PassBody,
        checkpoint: bool,
    ) -> tuple[SyncResult, bool]:
        started_at = self._clock()
        started = time.monotonic()
        result = SyncResult(mappings_synced=1)

        try:
            next_token = await body(mapping, sync_type, result)
            await self._auto_resolve(mapping)
        except Exception as exc:
            await self._record_failure(
                mapping, sync_type, trigger, result, started_at, started, exc
            )
            return result, isinstance(exc, TokenRefreshError)

        if checkpoint:
            await self._store.save_sync_checkpoint(
                mapping.id, sync_token=next_token, synced_at=self._clock()
            )
            result.sync_token = next_token
        result.sync_duration = int((time.monotonic() - started) * 1000)

        status = SyncStatus.PARTIAL if result.errors_encountered else SyncStatus.SUCCESS
        await self._append_log(
            mapping, sync_type, trigger, status, result, started_at, next_sync_token=next_token
        )
        self._metrics.record_pass(sync_type, status, result.sync_duration)
        logger.info(
            "Mapping %s %s sync %s: processed=%d created=%d updated=%d deleted=%d "
            "conflicts=%d errors=%d",
            mapping.id,
            sync_type,
            status,
            result.events_processed,
            result.events_created,
            result.events_updated,
            result.events_deleted,
            result.conflicts_detected,
            result.errors_encountered,
        )
        return result, False

    async def _page_pass(
        self,
        mapping: CalendarMapping,
        sync_type: SyncType,
        result: SyncResult,
    ) -> str | None:
        # Webhook passes are incremental; full passes always rescan the window.
        if sync_type is SyncType.FULL or mapping.last_sync_token is None:
            return await self._iterate_pages(mapping, None, result)
        try:
            return await self._iterate_pages(mapping, mapping.last_sync_token, result)
        except SyncTokenExpired:
            logger.warning(
                "Sync token expired for mapping %s; falling back to a windowed full sync",
                mapping.id,
            )
            await self._store.clear_sync_token(mapping.id)
            result.message = TOKEN_EXPIRED_MESSAGE
            return await self._iterate_pages(mapping, None, result)

    async def _iterate_pages(
        self,
        mapping: CalendarMapping,
        sync_token: str | None,
        result: SyncResult,
    ) -> str | None:
        window = (
            None
            if sync_token is not None
            else TimeWindow.around(
                self._clock(),
                past_days=self._settings.window_past_days,
                future_days=self._settings.window_future_days,
            )
        )
        page_token: str | None = None
        next_sync_token: str | None = None
        pages = 0

        while True:
            page = await self._caller.call(
                mapping.account_id,
                lambda credential, token=page_token: self._provider.list_events(
                    credential,
                    mapping.provider_calendar_id,
                    sync_token=sync_token,
                    time_window=window,
                    page_token=token,
                    page_size=self._settings.page_size,
                ),
                description=f"list events for mapping {mapping.id}",
            )
            pages += 1
            for item in page.items:
                await self._apply(mapping, item, result)
            if page.next_sync_token:
                next_sync_token = page.next_sync_token
            if not page.next_page_token:
                break
            page_token = page.next_page_token

        logger.debug("Mapping %s: consumed %d page(s)", mapping.id, pages)
        return next_sync_token

    async def _apply(
        self,
        mapping: CalendarMapping,
        payload: dict[str, Any],
        result: SyncResult,
    ) -> None:
        try:
            outcome = await self._reconciler.reconcile(mapping, payload)
        except ReconciliationError as exc:
            result.events_processed += 1
            result.errors_encountered += 1
            logger.warning("Skipping provider event: %s", describe_error(exc))
            return
        result.count(outcome.action)

    async def _auto_resolve(self, mapping: CalendarMapping) -> None:
        """Resolve every conflict still pending on ``mapping`` under its policy.

        Pending conflicts are read back from the store, so conflicts flagged by
        an earlier failed pass, or while the mapping was ``manual``, are
        resolved too.
        """
        if mapping.conflict_resolution is ConflictPolicy.MANUAL:
            return
        pending = await self._store.list_conflicts(mapping.user_id, mapping_id=mapping.id)
        if not pending:
            return
        summary = await self._resolver.resolve(pending, mapping.conflict_resolution)
        logger.info(
            "Auto-resolved conflicts on mapping %s with %s: resolved=%d failed=%d",
            mapping.id,
            mapping.conflict_resolution,
            summary.resolved,
            summary.failed,
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def _record_failure(
        self,
        mapping: CalendarMapping,
        sync_type: SyncType,
        trigger: str,
        result: SyncResult,
        started_at: datetime,
        started: float,
        exc: BaseException,
    ) -> None:
        message = describe_error(exc)
        result.errors_encountered += 1
        result.sync_duration = int((time.monotonic() - started) * 1000)
        result.message = message
        logger.warning(
            "Mapping %s %s sync failed (%s): %s",
            mapping.id,
            sync_type,
            type(exc).__name__,
            message,
            exc_info=not isinstance(exc, TokenRefreshError),
        )
        await self._store.record_mapping_error(mapping.id, message)
        await self._append_log(
            mapping,
            sync_type,
            trigger,
            SyncStatus.FAILED,
            result,
            started_at,
            error_message=message,
        )
        self._metrics.record_pass(sync_type, SyncStatus.FAILED, result.sync_duration)

    async def _append_log(
        self,
        mapping: CalendarMapping,
        sync_type: SyncType,
        trigger: str,
        status: SyncStatus,
        result: SyncResult,
        started_at: datetime,
        *,
        next_sync_token: str | None = None,
        error_message: str | None = None,
    ) -> None:
        await self._store.append_sync_log(
            SyncLog(
                user_id=mapping.user_id,
                mapping_id=mapping.id,
                sync_type=sync_type,
                status=status,
                trigger=trigger,
                events_processed=result.events_processed,
                events_created=result.events_created,
                events_updated=result.events_updated,
                events_deleted=result.events_deleted,
                conflicts_detected=result.conflicts_detected,
                errors_encountered=result.errors_encountered,
                duration_ms=result.sync_duration,
                sync_token=mapping.last_sync_token,
                next_sync_token=next_sync_token,
                error_message=error_message,
                started_at=started_at,
                completed_at=self._clock(),
            )
        )
