"""Facade wiring the sync components behind the public engine operations."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

import httpx

from calsync.sync.conflicts import ConflictResolver
from calsync.sync.locks import MappingLocks
from calsync.sync.models import (
    CalendarEvent,
    ConflictResolutionRequest,
    ConflictResolutionSummary,
    SyncLog,
    SyncResult,
)
from calsync.sync.orchestrator import SyncOrchestrator, SyncSettings
from calsync.sync.provider import CalendarProvider, GoogleCalendarProvider
from calsync.sync.reconciler import EventReconciler
from calsync.sync.retry import ProviderCaller, RetryPolicy
from calsync.sync.scheduler import SchedulerSettings, SyncScheduler
from calsync.sync.store import SyncStore
from calsync.sync.tasks import HttpTaskSink, LoggingTaskSink, TaskSink
from calsync.sync.tokens import TokenManager
from calsync.sync.webhook import WebhookIntake, WebhookNotification

if TYPE_CHECKING:
    from calsync.config import CalsyncConfig

logger = logging.getLogger(__name__)


class CalendarSyncEngine:
    """Entry point used by the HTTP API, the CLI and the scheduler."""

    def __init__(
        self,
        store: SyncStore,
        orchestrator: SyncOrchestrator,
        resolver: ConflictResolver,
        webhooks: WebhookIntake,
        scheduler: SyncScheduler | None = None,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.resolver = resolver
        self.webhooks = webhooks
        self.scheduler = scheduler

    async def full_sync(self, user_id: str, account_id: str | None = None) -> SyncResult:
        return await self.orchestrator.full_sync(user_id, account_id)

    async def incremental_sync(self, user_id: str, account_id: str | None = None) -> SyncResult:
        return await self.orchestrator.incremental_sync(user_id, account_id)

    async def sync_single_event(self, user_id: str, event_id: str) -> SyncResult:
        return await self.orchestrator.sync_single_event(user_id, event_id)

    async def handle_webhook(
        self,
        account_id: str,
        notification: WebhookNotification,
        user_id: str | None = None,
    ) -> SyncResult:
        return await self.webhooks.handle(account_id, notification, user_id)

    async def resolve_conflicts(
        self, user_id: str, requests: Iterable[ConflictResolutionRequest]
    ) -> ConflictResolutionSummary:
        return await self.resolver.resolve_requests(user_id, requests)

    async def list_conflicts(self, user_id: str) -> list[CalendarEvent]:
        return await self.store.list_conflicts(user_id)

    async def list_sync_logs(
        self, user_id: str, *, mapping_id: str | None = None, limit: int = 50
    ) -> list[SyncLog]:
        return await self.store.list_sync_logs(user_id, mapping_id=mapping_id, limit=limit)


def build_engine(
    config: CalsyncConfig,
    store: SyncStore,
    http_client: httpx.AsyncClient,
    *,
    provider: CalendarProvider | None = None,
    task_sink: TaskSink | None = None,
) -> CalendarSyncEngine:
    """Assemble an engine from configuration and shared resources.

    ``http_client`` is shared by the Google adapter and the task sink; the
    caller owns its lifecycle.
    """
    sync_cfg = config.sync
    if provider is None:
        provider = GoogleCalendarProvider(
            client_id=config.google.client_id,
            client_secret=config.google.client_secret,
            http_client=http_client,
            api_base_url=config.google.api_base_url,
            token_url=config.google.token_url,
        )
    if task_sink is None:
        task_sink = (
            HttpTaskSink(config.tasks.base_url, http_client)
            if config.tasks.base_url
            else LoggingTaskSink()
        )

    tokens = TokenManager(
        store,
        provider,
        refresh_skew_s=sync_cfg.token_refresh_skew_s,
        max_attempts=sync_cfg.max_attempts,
        backoff_base_s=sync_cfg.backoff_base_s,
        timeout_s=sync_cfg.provider_timeout_s,
    )
    caller = ProviderCaller(
        tokens,
        RetryPolicy(
            max_attempts=sync_cfg.max_attempts,
            backoff_base_s=sync_cfg.backoff_base_s,
            backoff_cap_s=sync_cfg.backoff_cap_s,
            timeout_s=sync_cfg.provider_timeout_s,
        ),
    )
    resolver = ConflictResolver(store)
    orchestrator = SyncOrchestrator(
        store,
        provider,
        caller,
        EventReconciler(store, task_sink, task_timeout_s=config.tasks.timeout_s),
        resolver,
        locks=MappingLocks(),
        settings=SyncSettings(
            window_past_days=sync_cfg.window_past_days,
            window_future_days=sync_cfg.window_future_days,
            page_size=sync_cfg.page_size,
            lock_wait_s=sync_cfg.lock_wait_s,
        ),
    )
    sched_cfg = config.scheduler
    scheduler = SyncScheduler(
        store,
        orchestrator,
        tokens,
        SchedulerSettings(
            incremental_interval_s=sched_cfg.incremental_interval_s,
            full_interval_s=sched_cfg.full_interval_s,
            token_refresh_lead_s=sched_cfg.token_refresh_lead_s,
            max_concurrent_jobs=sched_cfg.max_concurrent_jobs,
            retry_attempts=sched_cfg.retry_attempts,
            retry_base_delay_s=sched_cfg.retry_base_delay_s,
            retry_max_delay_s=sched_cfg.retry_max_delay_s,
        ),
    )
    logger.info(
        "Calendar sync engine ready (provider=%s, task_sink=%s)",
        provider.name,
        type(task_sink).__name__,
    )
    return CalendarSyncEngine(
        store,
        orchestrator,
        resolver,
        WebhookIntake(store, orchestrator),
        scheduler,
    )
