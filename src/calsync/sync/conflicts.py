"""Conflict resolution for events modified both locally and at the provider.

Resolution is the second phase of the detect → resolve pipeline: the
reconciler only flags conflicts, and ``ConflictResolver`` applies a policy
to flagged events, either automatically after a pass (non-manual mapping
policies) or on explicit request from the API.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError
from pydantic.alias_generators import to_snake

from calsync.sync.models import (
    CONTENT_FIELDS,
    CalendarEvent,
    ConflictPolicy,
    ConflictResolutionRequest,
    ConflictResolutionSummary,
    EventContent,
)
from calsync.sync.store import SyncStore

logger = logging.getLogger(__name__)

WINNER_LOCAL = "local"
WINNER_REMOTE = "remote"
WINNER_MANUAL = "manual"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _merge_resolved_version(base: EventContent, resolved_version: dict[str, Any]) -> EventContent:
    normalized = {to_snake(key): value for key, value in resolved_version.items()}
    unknown = sorted(set(normalized) - CONTENT_FIELDS)
    if unknown:
        raise ValueError(f"resolvedVersion contains unknown fields: {', '.join(unknown)}")
    merged = base.model_dump()
    merged.update(normalized)
    return EventContent.model_validate(merged)


class ConflictResolver:
    """Applies local_wins / remote_wins / manual resolutions to flagged events."""

    def __init__(
        self,
        store: SyncStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._clock = clock

    def apply(
        self,
        event: CalendarEvent,
        policy: ConflictPolicy,
        resolved_version: dict[str, Any] | None = None,
    ) -> CalendarEvent | None:
        """Return ``event`` with the conflict resolved, or ``None`` if it stays pending.

        Raises
        ------
        ValueError
            If the event has no pending conflict or ``resolved_version`` is invalid.
        """
        record = event.conflict_data
        if not event.conflict_detected or record is None:
            raise ValueError(f"event {event.id} has no pending conflict")

        if policy is ConflictPolicy.LOCAL_WINS:
            # Keep local content; adopt the remote hash so the same remote state is not re-flagged.
            resolved = event.model_copy(update={"sync_hash": record.remote_hash})
            winner = WINNER_LOCAL
        elif policy is ConflictPolicy.REMOTE_WINS:
            resolved = event.with_content(
                record.remote_version,
                sync_hash=record.remote_hash,
                locally_modified=False,
            )
            winner = WINNER_REMOTE
        else:
            if resolved_version is None:
                return None
            content = _merge_resolved_version(event.content(), resolved_version)
            resolved = event.with_content(
                content,
                sync_hash=record.remote_hash,
                locally_modified=True,
            )
            winner = WINNER_MANUAL

        now = self._clock()
        return resolved.model_copy(
            update={
                "conflict_detected": False,
                "conflict_data": record.model_copy(
                    update={"resolution": policy, "resolved_at": now, "winner": winner}
                ),
                "last_synced_at": now,
            }
        )

    async def resolve(
        self, conflicts: Iterable[CalendarEvent], policy: ConflictPolicy
    ) -> ConflictResolutionSummary:
        """Apply ``policy`` to every flagged event in ``conflicts``."""
        summary = ConflictResolutionSummary()
        for event in conflicts:
            await self._resolve_one(event, policy, None, summary)
        return summary

    async def resolve_requests(
        self, user_id: str, requests: Iterable[ConflictResolutionRequest]
    ) -> ConflictResolutionSummary:
        """Apply explicit per-event resolutions submitted by the user."""
        summary = ConflictResolutionSummary()
        for request in requests:
            event = await self._store.get_event(user_id, request.event_id)
            if event is None or not event.conflict_detected:
                logger.info("No pending conflict for event %s (user %s)", request.event_id, user_id)
                summary.failed += 1
                continue
            await self._resolve_one(event, request.resolution, request.resolved_version, summary)
        return summary

    async def _resolve_one(
        self,
        event: CalendarEvent,
        policy: ConflictPolicy,
        resolved_version: dict[str, Any] | None,
        summary: ConflictResolutionSummary,
    ) -> None:
        try:
            resolved = self.apply(event, policy, resolved_version)
        except (ValueError, ValidationError) as exc:
            logger.warning("Cannot resolve conflict for event %s: %s", event.id, exc)
            summary.failed += 1
            return
        if resolved is None:
            summary.pending += 1
            return
        await self._store.update_event(resolved)
        summary.resolved += 1
        logger.info(
            "Resolved conflict for event %s with %s (winner=%s)",
            event.id,
            policy,
            resolved.conflict_data.winner if resolved.conflict_data else None,
        )
