"""Domain models for calendar accounts, mappings, mirrored events, and sync results."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ConflictPolicy(StrEnum):
    """Per-mapping policy for events edited on both sides."""

    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    MANUAL = "manual"


class EventStatus(StrEnum):
    TENTATIVE = "tentative"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class SyncType(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"
    SINGLE_EVENT = "single_event"
    WEBHOOK = "webhook"


class SyncStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


class ReconcileAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"
    CONFLICT = "conflict"


# ---------------------------------------------------------------------------
# Accounts and credentials
# ---------------------------------------------------------------------------


class CalendarAccount(BaseModel):
    """One authenticated connection to the calendar provider."""

    id: str
    user_id: str
    provider_email: str
    is_primary: bool = False
    is_active: bool = True


class OAuthToken(BaseModel):
    """Stored refreshable credential plus refresh bookkeeping."""

    account_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_refresh_count: int = 0
    last_token_refresh: datetime | None = None
    error_count: int = 0
    last_error: str | None = None
    last_error_at: datetime | None = None

    def expires_within(self, seconds: float, *, now: datetime | None = None) -> bool:
        current = now or datetime.now(UTC)
        return self.expires_at <= current + timedelta(seconds=seconds)

    def to_credential(self) -> Credential:
        return Credential(
            account_id=self.account_id,
            access_token=self.access_token,
            expires_at=self.expires_at,
        )


class Credential(BaseModel):
    """Immutable bearer credential passed explicitly into every provider call."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    access_token: str
    expires_at: datetime


class TokenGrant(BaseModel):
    """Result of exchanging a refresh token at the provider."""

    access_token: str
    expires_at: datetime
    refresh_token: str | None = None


# ---------------------------------------------------------------------------
# Mapping configuration
# ---------------------------------------------------------------------------


class TitleRule(BaseModel):
    """Assigns ``subject_id`` when ``pattern`` matches the event title (case-insensitive)."""

    model_config = ConfigDict(extra="forbid")

    pattern: str
    subject_id: str

    @field_validator("pattern")
    @classmethod
    def _validate_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid title pattern {value!r}: {exc}") from exc
        return value


class ColorRule(BaseModel):
    """Assigns ``subject_id`` to events carrying the provider color ``color_id``."""

    model_config = ConfigDict(extra="forbid")

    color_id: str
    subject_id: str


class CalendarMapping(BaseModel):
    """Sync configuration linking one local bucket with one provider calendar."""

    id: str
    user_id: str
    account_id: str
    provider_calendar_id: str
    calendar_name: str | None = None
    is_primary: bool = False
    sync_enabled: bool = True
    last_sync_token: str | None = None
    last_sync_at: datetime | None = None
    conflict_resolution: ConflictPolicy = ConflictPolicy.MANUAL
    study_block_detection: bool = True
    auto_create_tasks: bool = False
    default_subject_id: str | None = None
    default_duration_minutes: int = Field(default=60, gt=0)
    title_rules: list[TitleRule] = Field(default_factory=list)
    color_rules: list[ColorRule] = Field(default_factory=list)
    last_error: str | None = None
    error_count: int = 0


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class Attendee(BaseModel):
    email: str | None = None
    display_name: str | None = None
    response_status: str | None = None
    organizer: bool = False
    is_self: bool = False


class Reminder(BaseModel):
    method: str
    minutes: int


class EventContent(BaseModel):
    """Provider-derived content of an event.

    This is the unit that conflict snapshots capture and that resolutions
    write back, so the local mirror can always be rebuilt from one of them.
    """

    title: str = ""
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    timezone: str | None = None
    status: EventStatus = EventStatus.CONFIRMED
    color_id: str | None = None
    html_link: str | None = None
    ical_uid: str | None = None
    etag: str | None = None
    sequence: int = 0
    is_recurring: bool = False
    recurrence_rule: str | None = None
    organizer_email: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    use_default_reminders: bool = True
    reminders: list[Reminder] = Field(default_factory=list)
    provider_updated_at: datetime | None = None
    subject_id: str | None = None
    is_study_block: bool = False
    study_duration_minutes: int | None = None


CONTENT_FIELDS: frozenset[str] = frozenset(EventContent.model_fields)


class ConflictRecord(BaseModel):
    """Snapshot of divergent local and remote versions of one event."""

    local_version: EventContent
    remote_version: EventContent
    remote_hash: str
    detected_at: datetime
    resolution: ConflictPolicy | None = None
    resolved_at: datetime | None = None
    winner: str | None = None

    @property
    def pending(self) -> bool:
        return self.resolved_at is None


class CalendarEvent(EventContent):
    """Local mirror of a provider event plus local-only sync state."""

    id: str | None = None
    user_id: str
    mapping_id: str
    provider_event_id: str
    sync_hash: str | None = None
    locally_modified: bool = False
    conflict_detected: bool = False
    conflict_data: ConflictRecord | None = None
    last_synced_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def content(self) -> EventContent:
        return EventContent.model_validate(self.model_dump(include=CONTENT_FIELDS))

    def with_content(self, content: EventContent, **updates: Any) -> CalendarEvent:
        merged: dict[str, Any] = {name: getattr(content, name) for name in CONTENT_FIELDS}
        merged.update(updates)
        return self.model_copy(update=merged)


# ---------------------------------------------------------------------------
# Sync bookkeeping
# ---------------------------------------------------------------------------


class SyncResult(BaseModel):
    """Aggregate counts returned by every sync entry point."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    conflicts_detected: int = 0
    errors_encountered: int = 0
    sync_duration: int = 0
    sync_token: str | None = None
    mappings_synced: int = 0
    in_progress: bool = False
    message: str | None = None

    def count(self, action: ReconcileAction) -> None:
        self.events_processed += 1
        if action is ReconcileAction.CREATED:
            self.events_created += 1
        elif action is ReconcileAction.UPDATED:
            self.events_updated += 1
        elif action is ReconcileAction.DELETED:
            self.events_deleted += 1
        elif action is ReconcileAction.CONFLICT:
            self.conflicts_detected += 1

    def merge(self, other: SyncResult) -> None:
        """Fold ``other`` into this result (durations are not summed)."""
        self.events_processed += other.events_processed
        self.events_created += other.events_created
        self.events_updated += other.events_updated
        self.events_deleted += other.events_deleted
        self.conflicts_detected += other.conflicts_detected
        self.errors_encountered += other.errors_encountered
        self.mappings_synced += other.mappings_synced
        self.in_progress = self.in_progress or other.in_progress
        if other.sync_token is not None:
            self.sync_token = other.sync_token
        if other.message and not self.message:
            self.message = other.message


class SyncLog(BaseModel):
    """Append-only audit record of one mapping pass."""

    id: str | None = None
    user_id: str
    mapping_id: str
    sync_type: SyncType
    status: SyncStatus
    trigger: str | None = None
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    conflicts_detected: int = 0
    errors_encountered: int = 0
    duration_ms: int = 0
    sync_token: str | None = None
    next_sync_token: str | None = None
    error_message: str | None = None
    started_at: datetime
    completed_at: datetime | None = None


class TaskCreationRequest(BaseModel):
    """Companion study task emitted when a study block is first mirrored."""

    user_id: str
    subject_id: str | None = None
    title: str
    due_date: datetime
    estimated_minutes: int
    source_event_id: str | None = None


class ConflictResolutionRequest(BaseModel):
    """One explicit resolution submitted for a pending conflict."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_id: str
    resolution: ConflictPolicy
    resolved_version: dict[str, Any] | None = None


class ConflictResolutionSummary(BaseModel):
    resolved: int = 0
    pending: int = 0
    failed: int = 0


# ---------------------------------------------------------------------------
# Provider paging
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime

    @classmethod
    def around(cls, now: datetime, *, past_days: int, future_days: int) -> TimeWindow:
        return cls(start=now - timedelta(days=past_days), end=now + timedelta(days=future_days))


@dataclass
class ProviderPage:
    items: list[dict[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None
