"""Request and response models for the sync, webhook and conflict endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from calsync.sync.models import CalendarEvent, ConflictResolutionRequest, EventContent


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncRequest(_CamelModel):
    """Optional body of ``POST /sync/full`` and ``POST /sync/incremental``."""

    account_id: str | None = None


class WebhookBody(_CamelModel):
    """Optional body forwarded with a provider push notification."""

    calendar_id: str | None = None


class ConflictResolveBody(_CamelModel):
    resolutions: list[ConflictResolutionRequest]


class ConflictEntry(_CamelModel):
    """A pending conflict as surfaced to the user for manual resolution."""

    event_id: str
    mapping_id: str
    provider_event_id: str
    title: str
    detected_at: datetime | None = None
    local_version: EventContent | None = None
    remote_version: EventContent | None = None

    @classmethod
    def from_event(cls, event: CalendarEvent) -> ConflictEntry:
        record = event.conflict_data
        return cls(
            event_id=event.id or "",
            mapping_id=event.mapping_id,
            provider_event_id=event.provider_event_id,
            title=event.title,
            detected_at=record.detected_at if record else None,
            local_version=record.local_version if record else None,
            remote_version=record.remote_version if record else None,
        )
