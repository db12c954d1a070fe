"""Tests for calsync.sync.classifier: pure event classification and hashing."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from calsync.sync.classifier import (
    classify_event,
    compute_sync_hash,
    is_cancelled,
    is_study_block,
    resolve_subject,
)
from calsync.sync.errors import ReconciliationError
from calsync.sync.models import ColorRule, EventStatus, TitleRule
from tests.sync._test_helpers import google_event, make_mapping

pytestmark = pytest.mark.unit


# ------------------------------------------------------------------
# Study-block detection
# ------------------------------------------------------------------


def test_midterm_exam_review_is_study_block():
    content = classify_event(google_event("e1", "Midterm Exam Review"), make_mapping())
    assert content.is_study_block is True
    assert content.study_duration_minutes == 60


def test_lunch_with_sam_is_not_study_block():
    content = classify_event(google_event("e1", "Lunch with Sam"), make_mapping())
    assert content.is_study_block is False
    assert content.study_duration_minutes is None


def test_keyword_in_description_marks_study_block():
    payload = google_event("e1", "Library", description="Chapter 4 READING")
    assert classify_event(payload, make_mapping()).is_study_block is True


def test_detection_disabled_on_mapping():
    mapping = make_mapping(study_block_detection=False)
    content = classify_event(google_event("e1", "Homework session"), mapping)
    assert content.is_study_block is False


@pytest.mark.parametrize(
    ("title", "expected"),
    [
        ("QUIZ prep", True),
        ("Group project sync", True),
        ("Dentist", False),
        ("", False),
    ],
)
def test_is_study_block_case_insensitive(title, expected):
    assert is_study_block(title, None) is expected


# ------------------------------------------------------------------
# Time handling
# ------------------------------------------------------------------


def test_all_day_event_from_date_only_start():
    payload = google_event("e1", "Holiday")
    payload["start"] = {"date": "2026-03-05"}
    payload["end"] = {"date": "2026-03-06"}

    content = classify_event(payload, make_mapping())

    assert content.is_all_day is True
    assert content.start_time == datetime(2026, 3, 5, tzinfo=UTC)
    assert content.end_time == datetime(2026, 3, 6, tzinfo=UTC)


def test_all_day_event_without_end_spans_one_day():
    payload = google_event("e1", "Holiday")
    payload["start"] = {"date": "2026-03-05"}
    del payload["end"]

    content = classify_event(payload, make_mapping())

    assert content.end_time - content.start_time == timedelta(days=1)


def test_timed_event_without_end_uses_mapping_default_duration():
    payload = google_event("e1", "Call")
    del payload["end"]

    content = classify_event(payload, make_mapping(default_duration_minutes=45))

    assert content.is_all_day is False
    assert content.end_time - content.start_time == timedelta(minutes=45)


def test_zulu_timestamps_are_parsed_as_utc():
    payload = google_event("e1")
    payload["start"] = {"dateTime": "2026-03-05T14:00:00Z"}
    payload["end"] = {"dateTime": "2026-03-05T15:30:00Z"}

    content = classify_event(payload, make_mapping())

    assert content.start_time == datetime(2026, 3, 5, 14, 0, tzinfo=UTC)
    assert content.end_time == datetime(2026, 3, 5, 15, 30, tzinfo=UTC)


def test_missing_start_raises_reconciliation_error():
    payload = google_event("e1")
    del payload["start"]

    with pytest.raises(ReconciliationError, match="no start time"):
        classify_event(payload, make_mapping())


def test_malformed_start_raises_reconciliation_error():
    payload = google_event("e1")
    payload["start"] = {"dateTime": "not-a-date"}

    with pytest.raises(ReconciliationError, match="invalid start/end"):
        classify_event(payload, make_mapping())


# ------------------------------------------------------------------
# Subject resolution
# ------------------------------------------------------------------


def test_default_subject_wins_over_rules():
    mapping = make_mapping(
        default_subject_id="subj-default",
        title_rules=[TitleRule(pattern="calc", subject_id="subj-math")],
    )
    assert resolve_subject(mapping, title="Calculus", color_id=None) == "subj-default"


def test_title_rule_takes_precedence_over_color_rule():
    mapping = make_mapping(
        title_rules=[TitleRule(pattern=r"^calc", subject_id="subj-math")],
        color_rules=[ColorRule(color_id="5", subject_id="subj-art")],
    )
    assert resolve_subject(mapping, title="Calculus II", color_id="5") == "subj-math"


def test_first_matching_title_rule_is_used():
    mapping = make_mapping(
        title_rules=[
            TitleRule(pattern="lab", subject_id="subj-chem"),
            TitleRule(pattern="chem", subject_id="subj-other"),
        ]
    )
    assert resolve_subject(mapping, title="Chem LAB", color_id=None) == "subj-chem"


def test_color_rule_used_when_no_title_rule_matches():
    mapping = make_mapping(
        title_rules=[TitleRule(pattern="history", subject_id="subj-hist")],
        color_rules=[ColorRule(color_id="5", subject_id="subj-art")],
    )
    content = classify_event(google_event("e1", "Sketching", colorId="5"), mapping)
    assert content.subject_id == "subj-art"


def test_no_subject_when_nothing_matches():
    assert resolve_subject(make_mapping(), title="Anything", color_id="3") is None


def test_invalid_title_pattern_rejected():
    with pytest.raises(ValidationError, match="invalid title pattern"):
        TitleRule(pattern="(unclosed", subject_id="s")


# ------------------------------------------------------------------
# Field normalization
# ------------------------------------------------------------------


def test_optional_arrays_default_to_empty():
    content = classify_event(google_event("e1"), make_mapping())
    assert content.attendees == []
    assert content.reminders == []
    assert content.use_default_reminders is True
    assert content.status is EventStatus.CONFIRMED


def test_attendees_and_reminders_are_flattened():
    payload = google_event(
        "e1",
        attendees=[
            {"email": "sam@example.com", "responseStatus": "accepted", "organizer": True},
            {"email": "me@example.com", "self": True},
            "garbage",
        ],
        reminders={"useDefault": False, "overrides": [{"method": "popup", "minutes": 10}]},
        organizer={"email": "sam@example.com"},
    )

    content = classify_event(payload, make_mapping())

    assert [a.email for a in content.attendees] == ["sam@example.com", "me@example.com"]
    assert content.attendees[0].organizer is True
    assert content.attendees[1].is_self is True
    assert content.use_default_reminders is False
    assert [(r.method, r.minutes) for r in content.reminders] == [("popup", 10)]
    assert content.organizer_email == "sam@example.com"


def test_recurrence_rule_extracted():
    payload = google_event("e1", recurrence=["EXDATE:20260310", "RRULE:FREQ=WEEKLY;BYDAY=MO"])
    content = classify_event(payload, make_mapping())
    assert content.is_recurring is True
    assert content.recurrence_rule == "RRULE:FREQ=WEEKLY;BYDAY=MO"


def test_recurring_instance_flagged_by_recurring_event_id():
    content = classify_event(google_event("e1_20260310", recurringEventId="e1"), make_mapping())
    assert content.is_recurring is True
    assert content.recurrence_rule is None


# ------------------------------------------------------------------
# Hashing and status
# ------------------------------------------------------------------


def test_sync_hash_ignores_fields_outside_stable_set():
    base = google_event("e1", "Review")
    recolored = {**base, "colorId": "9", "htmlLink": "https://example.com/e1"}
    assert compute_sync_hash(base) == compute_sync_hash(recolored)


def test_sync_hash_is_independent_of_key_order():
    base = google_event("e1", "Review")
    reordered = dict(reversed(list(base.items())))
    assert compute_sync_hash(base) == compute_sync_hash(reordered)


@pytest.mark.parametrize(
    "change",
    [
        {"summary": "Renamed"},
        {"location": "Room 101"},
        {"updated": "2026-03-01T11:00:00Z"},
        {"sequence": 2},
        {"status": "tentative"},
    ],
)
def test_sync_hash_changes_with_stable_fields(change):
    base = google_event("e1", "Review")
    assert compute_sync_hash(base) != compute_sync_hash({**base, **change})


def test_sync_hash_is_hex_sha256():
    digest = compute_sync_hash(google_event("e1"))
    assert len(digest) == 64
    int(digest, 16)


@pytest.mark.parametrize(
    ("status", "expected"),
    [("cancelled", True), ("CANCELLED ", True), ("confirmed", False), (None, False)],
)
def test_is_cancelled(status, expected):
    assert is_cancelled({"id": "e1", "status": status}) is expected
