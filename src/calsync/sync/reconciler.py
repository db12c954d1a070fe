"""Per-event reconciliation of provider events against the local mirror.

``EventReconciler.reconcile`` decides, for one raw provider event, whether
the local store gets a create, an update, a soft delete, or a conflict flag.
Conflicts are only detected here; resolving them is the job of
``calsync.sync.conflicts.ConflictResolver``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from calsync.core.metrics import SyncMetrics, sync_metrics
from calsync.sync.classifier import classify_event, compute_sync_hash, is_cancelled
from calsync.sync.errors import ReconciliationError
from calsync.sync.models import (
    CalendarEvent,
    CalendarMapping,
    ConflictRecord,
    EventContent,
    ReconcileAction,
)
from calsync.sync.store import SyncStore
from calsync.sync.tasks import LoggingTaskSink, TaskSink, build_study_task, emit_study_task

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ReconcileOutcome:
    action: ReconcileAction
    event: CalendarEvent | None = None


class EventReconciler:
    """Applies provider events to the local store, keyed by provider event id."""

    def __init__(
        self,
        store: SyncStore,
        task_sink: TaskSink | None = None,
        *,
        task_timeout_s: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
        metrics: SyncMetrics = sync_metrics,
    ) -> None:
        self._store = store
        self._task_sink = task_sink or LoggingTaskSink()
        self._task_timeout_s = task_timeout_s
        self._clock = clock
        self._metrics = metrics

    async def reconcile(
        self, mapping: CalendarMapping, payload: dict[str, Any]
    ) -> ReconcileOutcome:
        raw_id = payload.get("id")
        provider_event_id = raw_id.strip() if isinstance(raw_id, str) else ""
        if not provider_event_id:
            raise ReconciliationError(None, "provider event has no id")
        try:
            outcome = await self._reconcile(mapping, provider_event_id, payload)
        except ValidationError as exc:
            raise ReconciliationError(provider_event_id, str(exc)) from exc
        self._metrics.record_event(str(outcome.action))
        return outcome

    async def _reconcile(
        self, mapping: CalendarMapping, provider_event_id: str, payload: dict[str, Any]
    ) -> ReconcileOutcome:
        now = self._clock()

        if is_cancelled(payload):
            removed = await self._store.soft_delete_event(mapping.id, provider_event_id, now)
            logger.debug(
                "Provider cancelled event %s (local row %s)",
                provider_event_id,
                "soft-deleted" if removed else "absent",
            )
            return ReconcileOutcome(ReconcileAction.DELETED)

        content = classify_event(payload, mapping)
        remote_hash = compute_sync_hash(payload)

        existing = await self._store.get_event_by_provider_id(mapping.id, provider_event_id)
        if existing is None:
            inserted = await self._store.insert_event(
                CalendarEvent(
                    **dict(content),
                    user_id=mapping.user_id,
                    mapping_id=mapping.id,
                    provider_event_id=provider_event_id,
                    sync_hash=remote_hash,
                    last_synced_at=now,
                )
            )
            if inserted is not None:
                await self._after_create(mapping, inserted)
                return ReconcileOutcome(ReconcileAction.CREATED, inserted)
            # Lost an insert race with a replayed page; reconcile against the winner.
            existing = await self._store.get_event_by_provider_id(mapping.id, provider_event_id)
            if existing is None:
                raise ReconciliationError(provider_event_id, "insert conflicted but no row found")

        return await self._reconcile_existing(existing, content, remote_hash, now)

    async def _reconcile_existing(
        self,
        existing: CalendarEvent,
        content: EventContent,
        remote_hash: str,
        now: datetime,
    ) -> ReconcileOutcome:
        pending = existing.conflict_data
        if (
            existing.conflict_detected
            and pending is not None
            and pending.remote_hash == remote_hash
        ):
            return ReconcileOutcome(ReconcileAction.UNCHANGED, existing)

        if existing.sync_hash == remote_hash and not existing.is_deleted:
            return ReconcileOutcome(ReconcileAction.UNCHANGED, existing)

        if not existing.locally_modified:
            updated = await self._store.update_event(
                existing.with_content(
                    content,
                    sync_hash=remote_hash,
                    last_synced_at=now,
                    deleted_at=None,
                )
            )
            return ReconcileOutcome(ReconcileAction.UPDATED, updated)

        record = ConflictRecord(
            local_version=existing.content(),
            remote_version=content,
            remote_hash=remote_hash,
            detected_at=now,
        )
        flagged = await self._store.update_event(
            existing.model_copy(update={"conflict_detected": True, "conflict_data": record})
        )
        logger.info(
            "Conflict detected for event %s (mapping %s)",
            existing.provider_event_id,
            existing.mapping_id,
        )
        return ReconcileOutcome(ReconcileAction.CONFLICT, flagged)

    async def _after_create(self, mapping: CalendarMapping, event: CalendarEvent) -> None:
        if not (mapping.auto_create_tasks and event.is_study_block):
            return
        await emit_study_task(
            self._task_sink, build_study_task(event), timeout_s=self._task_timeout_s
        )
