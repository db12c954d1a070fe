"""Provider push-notification intake.

Google Calendar push channels deliver header-only notifications; the body is
empty or carries the calendar id when a relay forwards it.  Every
notification that cannot be tied to a known, sync-enabled mapping is a
neutral no-op, never an error: channels keep firing for a while after a user
disables sync.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from calsync.sync.errors import DisabledMappingError, MappingNotFoundError
from calsync.sync.models import CalendarMapping, SyncResult, SyncType
from calsync.sync.orchestrator import SyncOrchestrator
from calsync.sync.store import SyncStore

logger = logging.getLogger(__name__)

# Google sends resource_state="sync" once when a channel is created.
CHANNEL_HANDSHAKE_STATE = "sync"


class WebhookNotification(BaseModel):
    channel_id: str | None = None
    resource_id: str | None = None
    resource_state: str | None = None
    message_number: int | None = None
    calendar_id: str | None = None


def _noop(message: str) -> SyncResult:
    return SyncResult(message=message)


def _select_mapping(
    mappings: list[CalendarMapping], calendar_id: str | None
) -> CalendarMapping | None:
    if calendar_id:
        return next((m for m in mappings if m.provider_calendar_id == calendar_id), None)
    primary = [m for m in mappings if m.is_primary]
    if len(primary) == 1:
        return primary[0]
    if len(mappings) == 1:
        return mappings[0]
    return None


class WebhookIntake:
    """Routes a push notification to an incremental pass on one mapping."""

    def __init__(self, store: SyncStore, orchestrator: SyncOrchestrator) -> None:
        self._store = store
        self._orchestrator = orchestrator

    async def handle(
        self,
        account_id: str,
        notification: WebhookNotification,
        user_id: str | None = None,
    ) -> SyncResult:
        if notification.resource_state == CHANNEL_HANDSHAKE_STATE:
            logger.info(
                "Webhook channel %s handshake for account %s", notification.channel_id, account_id
            )
            return _noop("Channel handshake acknowledged")

        try:
            mapping = await self._resolve_mapping(account_id, notification, user_id)
        except (MappingNotFoundError, DisabledMappingError) as exc:
            logger.info("Webhook for account %s ignored: %s", account_id, exc)
            return _noop(str(exc))

        logger.info(
            "Webhook %s (%s) triggers incremental sync of mapping %s",
            notification.channel_id,
            notification.resource_state,
            mapping.id,
        )
        return await self._orchestrator.sync_mapping(
            mapping.id, sync_type=SyncType.WEBHOOK, trigger="webhook"
        )

    async def _resolve_mapping(
        self,
        account_id: str,
        notification: WebhookNotification,
        user_id: str | None,
    ) -> CalendarMapping:
        account = await self._store.get_account(account_id)
        if account is None or not account.is_active:
            raise MappingNotFoundError("Unknown or inactive account")
        if user_id is not None and account.user_id != user_id:
            raise MappingNotFoundError("Account does not belong to the caller")

        mappings = await self._store.list_mappings(
            account.user_id, account_id=account_id, enabled_only=False
        )
        mapping = _select_mapping(mappings, notification.calendar_id)
        if mapping is None:
            raise MappingNotFoundError("No matching calendar mapping")
        if not mapping.sync_enabled:
            raise DisabledMappingError("Calendar sync disabled")
        return mapping
