"""Pure mapping from a raw provider event to local event semantics.

Nothing here performs I/O.  ``classify_event`` turns a Google Calendar event
payload plus the owning mapping's configuration into an ``EventContent``;
``compute_sync_hash`` produces the change-detection digest.
"""

from __future__ import annotations

import hashlib
import json
import re
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calsync.sync.errors import ReconciliationError
from calsync.sync.models import (
    Attendee,
    CalendarMapping,
    EventContent,
    EventStatus,
    Reminder,
)

STUDY_KEYWORDS: tuple[str, ...] = (
    "study",
    "homework",
    "assignment",
    "review",
    "reading",
    "practice",
    "exam",
    "test",
    "quiz",
    "learn",
    "research",
    "project",
    "coursework",
    "lecture",
    "tutorial",
)

# Provider fields whose change means the event content changed.
HASH_FIELDS: tuple[str, ...] = (
    "id",
    "summary",
    "description",
    "location",
    "start",
    "end",
    "status",
    "updated",
    "sequence",
)


def compute_sync_hash(payload: dict[str, Any]) -> str:
    """SHA-256 over a canonical JSON rendering of the stable field set."""
    stable = {key: payload.get(key) for key in HASH_FIELDS}
    serialized = json.dumps(stable, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def is_cancelled(payload: dict[str, Any]) -> bool:
    status = payload.get("status")
    return isinstance(status, str) and status.strip().lower() == EventStatus.CANCELLED


def is_study_block(title: str, description: str | None) -> bool:
    haystack = f"{title}\n{description or ''}".lower()
    return any(keyword in haystack for keyword in STUDY_KEYWORDS)


def resolve_subject(
    mapping: CalendarMapping, *, title: str, color_id: str | None
) -> str | None:
    """Pick a subject: default subject, then first matching title rule, then color rule.

    Title rules take precedence over color rules when both match.
    """
    if mapping.default_subject_id:
        return mapping.default_subject_id
    for rule in mapping.title_rules:
        if re.search(rule.pattern, title, re.IGNORECASE):
            return rule.subject_id
    if color_id is not None:
        for color_rule in mapping.color_rules:
            if color_rule.color_id == color_id:
                return color_rule.subject_id
    return None


# ---------------------------------------------------------------------------
# Payload parsing helpers
# ---------------------------------------------------------------------------


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _coerce_zoneinfo(timezone: str | None) -> tzinfo:
    if not timezone:
        return UTC
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _parse_boundary(boundary: Any) -> tuple[datetime, bool, str | None] | None:
    """Return ``(instant, is_date_only, timezone)`` for a start/end object."""
    if not isinstance(boundary, dict):
        return None
    timezone = _text(boundary.get("timeZone"))
    date_time = _text(boundary.get("dateTime"))
    if date_time is not None:
        return _parse_datetime(date_time), False, timezone
    date_value = _text(boundary.get("date"))
    if date_value is not None:
        parsed = date.fromisoformat(date_value)
        start = datetime(parsed.year, parsed.month, parsed.day, tzinfo=_coerce_zoneinfo(timezone))
        return start, True, timezone
    return None


def _parse_status(value: Any) -> EventStatus:
    if isinstance(value, str):
        try:
            return EventStatus(value.strip().lower())
        except ValueError:
            pass
    return EventStatus.CONFIRMED


def _parse_attendees(payload: Any) -> list[Attendee]:
    if not isinstance(payload, list):
        return []
    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        attendees.append(
            Attendee(
                email=_text(entry.get("email")),
                display_name=_text(entry.get("displayName")),
                response_status=_text(entry.get("responseStatus")),
                organizer=entry.get("organizer") is True,
                is_self=entry.get("self") is True,
            )
        )
    return attendees


def _parse_reminders(payload: Any) -> tuple[bool, list[Reminder]]:
    if not isinstance(payload, dict):
        return True, []
    use_default = payload.get("useDefault")
    reminders: list[Reminder] = []
    for entry in payload.get("overrides") or []:
        if not isinstance(entry, dict):
            continue
        method = _text(entry.get("method"))
        minutes = entry.get("minutes")
        if method is None or isinstance(minutes, bool) or not isinstance(minutes, int):
            continue
        reminders.append(Reminder(method=method, minutes=minutes))
    return use_default is not False, reminders


def _parse_recurrence_rule(payload: Any) -> str | None:
    if not isinstance(payload, list):
        return None
    for entry in payload:
        text = _text(entry)
        if text is not None and text.upper().startswith("RRULE:"):
            return text
    return None


def _parse_sequence(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


# ---------------------------------------------------------------------------
# classify_event()
# ---------------------------------------------------------------------------


def classify_event(payload: dict[str, Any], mapping: CalendarMapping) -> EventContent:
    """Map a raw provider event and mapping configuration to local event content.

    Raises
    ------
    ReconciliationError
        If the payload lacks a usable start time.
    """
    event_id = _text(payload.get("id"))
    try:
        start = _parse_boundary(payload.get("start"))
        end = _parse_boundary(payload.get("end"))
    except ValueError as exc:
        raise ReconciliationError(event_id, f"invalid start/end value: {exc}") from exc
    if start is None:
        raise ReconciliationError(event_id, "event has no start time")

    start_time, is_all_day, timezone = start
    if end is not None:
        end_time = end[0]
    elif is_all_day:
        end_time = start_time + timedelta(days=1)
    else:
        end_time = start_time + timedelta(minutes=mapping.default_duration_minutes)

    title = _text(payload.get("summary")) or ""
    description = _text(payload.get("description"))
    color_id = _text(payload.get("colorId"))
    study_block = mapping.study_block_detection and is_study_block(title, description)
    duration_minutes = max(int((end_time - start_time).total_seconds() // 60), 0)

    organizer = payload.get("organizer")
    updated_raw = _text(payload.get("updated"))
    try:
        provider_updated_at = _parse_datetime(updated_raw) if updated_raw else None
    except ValueError:
        provider_updated_at = None

    use_default_reminders, reminders = _parse_reminders(payload.get("reminders"))
    recurrence_rule = _parse_recurrence_rule(payload.get("recurrence"))

    return EventContent(
        title=title,
        description=description,
        location=_text(payload.get("location")),
        start_time=start_time,
        end_time=end_time,
        is_all_day=is_all_day,
        timezone=timezone,
        status=_parse_status(payload.get("status")),
        color_id=color_id,
        html_link=_text(payload.get("htmlLink")),
        ical_uid=_text(payload.get("iCalUID")),
        etag=_text(payload.get("etag")),
        sequence=_parse_sequence(payload.get("sequence")),
        is_recurring=bool(recurrence_rule or _text(payload.get("recurringEventId"))),
        recurrence_rule=recurrence_rule,
        organizer_email=_text(organizer.get("email")) if isinstance(organizer, dict) else None,
        attendees=_parse_attendees(payload.get("attendees")),
        use_default_reminders=use_default_reminders,
        reminders=reminders,
        provider_updated_at=provider_updated_at,
        subject_id=resolve_subject(mapping, title=title, color_id=color_id),
        is_study_block=study_block,
        study_duration_minutes=duration_minutes if study_block else None,
    )
