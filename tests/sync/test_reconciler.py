"""Tests for calsync.sync.reconciler: per-event create/update/delete/conflict decisions."""

from __future__ import annotations

from datetime import timedelta

import pytest

from calsync.sync.classifier import compute_sync_hash
from calsync.sync.errors import ReconciliationError
from calsync.sync.models import CalendarEvent, EventStatus, ReconcileAction
from calsync.sync.reconciler import EventReconciler
from tests.sync._test_helpers import (
    MAPPING_ID,
    NOW,
    InMemorySyncStore,
    RecordingTaskSink,
    cancelled_event,
    fixed_clock,
    google_event,
    make_mapping,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def store() -> InMemorySyncStore:
    return InMemorySyncStore()


@pytest.fixture
def sink() -> RecordingTaskSink:
    return RecordingTaskSink()


@pytest.fixture
def reconciler(store, sink) -> EventReconciler:
    return EventReconciler(store, sink, clock=fixed_clock)


async def _mark_locally_modified(store: InMemorySyncStore, provider_event_id: str) -> None:
    event = store.event_for(provider_event_id)
    await store.update_event(
        event.model_copy(update={"title": "My private notes", "locally_modified": True})
    )


# ------------------------------------------------------------------
# Creates and idempotent re-delivery
# ------------------------------------------------------------------


async def test_new_event_is_created(reconciler, store):
    payload = google_event("e1", "Lunch with Sam")

    outcome = await reconciler.reconcile(make_mapping(), payload)

    assert outcome.action is ReconcileAction.CREATED
    stored = store.event_for("e1")
    assert stored.id is not None
    assert stored.title == "Lunch with Sam"
    assert stored.user_id == "user-1"
    assert stored.mapping_id == MAPPING_ID
    assert stored.sync_hash == compute_sync_hash(payload)
    assert stored.last_synced_at == NOW


async def test_redelivery_is_unchanged(reconciler, store):
    payload = google_event("e1")
    await reconciler.reconcile(make_mapping(), payload)

    outcome = await reconciler.reconcile(make_mapping(), dict(payload))

    assert outcome.action is ReconcileAction.UNCHANGED
    assert len(store.events) == 1


async def test_lost_insert_race_reconciles_against_winner(sink):
    payload = google_event("e1")

    class RacingStore(InMemorySyncStore):
        async def insert_event(self, event: CalendarEvent) -> CalendarEvent | None:
            # A replayed page inserted the same provider id first.
            await super().insert_event(event)
            return None

    store = RacingStore()
    reconciler = EventReconciler(store, sink, clock=fixed_clock)

    outcome = await reconciler.reconcile(make_mapping(), payload)

    assert outcome.action is ReconcileAction.UNCHANGED
    assert len(store.events) == 1


# ------------------------------------------------------------------
# Updates and conflicts
# ------------------------------------------------------------------


async def test_remote_change_overwrites_unmodified_event(reconciler, store):
    await reconciler.reconcile(make_mapping(), google_event("e1", "Lunch"))
    changed = google_event("e1", "Lunch moved", updated="2026-03-01T12:00:00Z")

    outcome = await reconciler.reconcile(make_mapping(), changed)

    assert outcome.action is ReconcileAction.UPDATED
    stored = store.event_for("e1")
    assert stored.title == "Lunch moved"
    assert stored.sync_hash == compute_sync_hash(changed)
    assert stored.conflict_detected is False


async def test_remote_change_on_locally_modified_event_is_conflict(reconciler, store):
    original = google_event("e1", "Lunch")
    await reconciler.reconcile(make_mapping(), original)
    await _mark_locally_modified(store, "e1")
    changed = google_event("e1", "Lunch moved", updated="2026-03-01T12:00:00Z")

    outcome = await reconciler.reconcile(make_mapping(), changed)

    assert outcome.action is ReconcileAction.CONFLICT
    stored = store.event_for("e1")
    assert stored.conflict_detected is True
    # Local fields stay untouched until the conflict is resolved.
    assert stored.title == "My private notes"
    assert stored.sync_hash == compute_sync_hash(original)
    record = stored.conflict_data
    assert record is not None
    assert record.pending
    assert record.local_version.title == "My private notes"
    assert record.remote_version.title == "Lunch moved"
    assert record.remote_hash == compute_sync_hash(changed)
    assert record.detected_at == NOW


async def test_same_remote_state_is_not_reflagged_while_pending(reconciler, store):
    await reconciler.reconcile(make_mapping(), google_event("e1", "Lunch"))
    await _mark_locally_modified(store, "e1")
    changed = google_event("e1", "Lunch moved", updated="2026-03-01T12:00:00Z")
    await reconciler.reconcile(make_mapping(), changed)

    outcome = await reconciler.reconcile(make_mapping(), changed)

    assert outcome.action is ReconcileAction.UNCHANGED


# ------------------------------------------------------------------
# Cancellations
# ------------------------------------------------------------------


async def test_cancelled_event_is_soft_deleted(reconciler, store):
    await reconciler.reconcile(make_mapping(), google_event("e1"))

    outcome = await reconciler.reconcile(make_mapping(), cancelled_event("e1"))

    assert outcome.action is ReconcileAction.DELETED
    stored = store.event_for("e1")
    assert stored.deleted_at == NOW
    assert stored.status is EventStatus.CANCELLED


async def test_cancelled_unknown_event_counts_as_deleted(reconciler, store):
    outcome = await reconciler.reconcile(make_mapping(), cancelled_event("never-seen"))

    assert outcome.action is ReconcileAction.DELETED
    assert store.events == {}


async def test_event_reappearing_after_delete_is_restored(reconciler, store):
    payload = google_event("e1")
    await reconciler.reconcile(make_mapping(), payload)
    await reconciler.reconcile(make_mapping(), cancelled_event("e1"))

    outcome = await reconciler.reconcile(make_mapping(), payload)

    assert outcome.action is ReconcileAction.UPDATED
    assert store.event_for("e1").deleted_at is None


# ------------------------------------------------------------------
# Invalid payloads
# ------------------------------------------------------------------


@pytest.mark.parametrize("payload", [{"summary": "no id"}, {"id": "   "}, {"id": 42}])
async def test_event_without_id_is_rejected(reconciler, payload):
    with pytest.raises(ReconciliationError, match="no id"):
        await reconciler.reconcile(make_mapping(), payload)


async def test_event_without_start_is_rejected(reconciler, store):
    payload = google_event("e1")
    del payload["start"]

    with pytest.raises(ReconciliationError) as exc_info:
        await reconciler.reconcile(make_mapping(), payload)

    assert exc_info.value.provider_event_id == "e1"
    assert store.events == {}


# ------------------------------------------------------------------
# Companion study tasks
# ------------------------------------------------------------------


async def test_study_block_creation_emits_task(reconciler, sink, store):
    mapping = make_mapping(auto_create_tasks=True, default_subject_id="subj-bio")
    payload = google_event("e1", "Biology exam prep", duration=timedelta(minutes=90))

    await reconciler.reconcile(mapping, payload)

    assert len(sink.requests) == 1
    request = sink.requests[0]
    stored = store.event_for("e1")
    assert request.title == "Study: Biology exam prep"
    assert request.due_date == stored.end_time
    assert request.estimated_minutes == 90
    assert request.subject_id == "subj-bio"
    assert request.user_id == "user-1"
    assert request.source_event_id == stored.id


async def test_no_task_without_auto_create(reconciler, sink):
    await reconciler.reconcile(make_mapping(), google_event("e1", "Biology exam prep"))
    assert sink.requests == []


async def test_no_task_for_non_study_event(reconciler, sink):
    mapping = make_mapping(auto_create_tasks=True)
    await reconciler.reconcile(mapping, google_event("e1", "Lunch with Sam"))
    assert sink.requests == []


async def test_no_task_on_update(reconciler, sink):
    mapping = make_mapping(auto_create_tasks=True)
    await reconciler.reconcile(mapping, google_event("e1", "Homework"))
    await reconciler.reconcile(
        mapping, google_event("e1", "Homework ch. 2", updated="2026-03-01T12:00:00Z")
    )
    assert len(sink.requests) == 1


async def test_task_service_failure_does_not_fail_reconciliation(store):
    sink = RecordingTaskSink(error=RuntimeError("task service down"))
    reconciler = EventReconciler(store, sink, clock=fixed_clock)

    outcome = await reconciler.reconcile(
        make_mapping(auto_create_tasks=True), google_event("e1", "Exam review")
    )

    assert outcome.action is ReconcileAction.CREATED
    assert len(sink.requests) == 1
    assert store.event_for("e1").is_study_block is True
