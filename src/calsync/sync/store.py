"""Persistence contract for the sync engine and its asyncpg implementation.

The engine only talks to ``SyncStore``; ``PostgresSyncStore`` backs it with
raw SQL over an asyncpg pool.  JSONB columns are written with ``json.dumps``
and decoded with ``decode_jsonb`` since no custom codec is registered.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Protocol

import asyncpg

from calsync.sync.models import (
    CalendarAccount,
    CalendarEvent,
    CalendarMapping,
    OAuthToken,
    SyncLog,
)

logger = logging.getLogger(__name__)


class SyncStore(Protocol):
    """Transactional CRUD the engine needs over accounts, mappings, and events."""

    async def get_account(self, account_id: str) -> CalendarAccount | None: ...

    async def list_accounts(self, user_id: str) -> list[CalendarAccount]: ...

    async def get_token(self, account_id: str) -> OAuthToken | None: ...

    async def save_token(self, token: OAuthToken) -> None: ...

    async def list_tokens_expiring_before(self, deadline: datetime) -> list[OAuthToken]: ...

    async def list_sync_users(self) -> list[str]: ...

    async def list_mappings(
        self,
        user_id: str,
        *,
        account_id: str | None = None,
        enabled_only: bool = True,
    ) -> list[CalendarMapping]: ...

    async def get_mapping(self, mapping_id: str) -> CalendarMapping | None: ...

    async def save_sync_checkpoint(
        self, mapping_id: str, *, sync_token: str | None, synced_at: datetime
    ) -> None: ...

    async def clear_sync_token(self, mapping_id: str) -> None: ...

    async def record_mapping_error(self, mapping_id: str, message: str) -> None: ...

    async def get_event_by_provider_id(
        self, mapping_id: str, provider_event_id: str
    ) -> CalendarEvent | None: ...

    async def get_event(self, user_id: str, event_id: str) -> CalendarEvent | None: ...

    async def insert_event(self, event: CalendarEvent) -> CalendarEvent | None:
        """Insert ``event``; return ``None`` when the provider id already exists."""
        ...

    async def update_event(self, event: CalendarEvent) -> CalendarEvent: ...

    async def soft_delete_event(
        self, mapping_id: str, provider_event_id: str, deleted_at: datetime
    ) -> bool: ...

    async def list_conflicts(
        self, user_id: str, *, mapping_id: str | None = None
    ) -> list[CalendarEvent]: ...

    async def append_sync_log(self, log: SyncLog) -> None: ...

    async def list_sync_logs(
        self, user_id: str, *, mapping_id: str | None = None, limit: int = 50
    ) -> list[SyncLog]: ...


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value returned by asyncpg as text."""
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected, applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

_ACCOUNT_COLUMNS = "id, user_id, provider_email, is_primary, is_active"

_TOKEN_COLUMNS = (
    "account_id, access_token, refresh_token, expires_at, token_refresh_count, "
    "last_token_refresh, error_count, last_error, last_error_at"
)

_MAPPING_COLUMNS = (
    "id, user_id, account_id, provider_calendar_id, calendar_name, is_primary, "
    "sync_enabled, last_sync_token, last_sync_at, conflict_resolution, "
    "study_block_detection, auto_create_tasks, default_subject_id, "
    "default_duration_minutes, title_rules, color_rules, last_error, error_count"
)

# Order matters: _event_values() produces parameters in this order.
_EVENT_WRITE_COLUMNS = (
    "user_id",
    "mapping_id",
    "provider_event_id",
    "title",
    "description",
    "location",
    "start_time",
    "end_time",
    "is_all_day",
    "timezone",
    "status",
    "color_id",
    "html_link",
    "ical_uid",
    "etag",
    "sequence",
    "is_recurring",
    "recurrence_rule",
    "organizer_email",
    "attendees",
    "use_default_reminders",
    "reminders",
    "provider_updated_at",
    "subject_id",
    "is_study_block",
    "study_duration_minutes",
    "sync_hash",
    "locally_modified",
    "conflict_detected",
    "conflict_data",
    "last_synced_at",
    "deleted_at",
)
_EVENT_JSONB_COLUMNS = {"attendees", "reminders", "conflict_data"}
_EVENT_COLUMNS = "id, " + ", ".join(_EVENT_WRITE_COLUMNS)

_SYNC_LOG_COLUMNS = (
    "id, user_id, mapping_id, sync_type, status, trigger, events_processed, "
    "events_created, events_updated, events_deleted, conflicts_detected, "
    "errors_encountered, duration_ms, sync_token, next_sync_token, error_message, "
    "started_at, completed_at"
)


def _row_to_dict(row: Any) -> dict[str, Any]:
    data = dict(row)
    if data.get("id") is not None:
        data["id"] = str(data["id"])
    return data


def _row_to_mapping(row: Any) -> CalendarMapping:
    data = _row_to_dict(row)
    data["title_rules"] = decode_jsonb(data.get("title_rules")) or []
    data["color_rules"] = decode_jsonb(data.get("color_rules")) or []
    return CalendarMapping.model_validate(data)


def _row_to_event(row: Any) -> CalendarEvent:
    data = _row_to_dict(row)
    data["attendees"] = decode_jsonb(data.get("attendees")) or []
    data["reminders"] = decode_jsonb(data.get("reminders")) or []
    data["conflict_data"] = decode_jsonb(data.get("conflict_data"))
    return CalendarEvent.model_validate(data)


def _event_values(event: CalendarEvent) -> list[Any]:
    dumped = event.model_dump(mode="json")
    values: list[Any] = []
    for column in _EVENT_WRITE_COLUMNS:
        if column in _EVENT_JSONB_COLUMNS:
            value = dumped[column]
            values.append(json.dumps(value) if value is not None else None)
        elif column == "status":
            values.append(str(event.status))
        else:
            values.append(getattr(event, column))
    return values


def _placeholders(start: int = 1) -> str:
    parts = []
    for offset, column in enumerate(_EVENT_WRITE_COLUMNS):
        cast = "::jsonb" if column in _EVENT_JSONB_COLUMNS else ""
        parts.append(f"${start + offset}{cast}")
    return ", ".join(parts)


class PostgresSyncStore:
    """``SyncStore`` backed by the calendar tables created by the core migration chain."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # -- accounts and tokens ------------------------------------------------

    async def get_account(self, account_id: str) -> CalendarAccount | None:
        row = await self._pool.fetchrow(
            f"SELECT {_ACCOUNT_COLUMNS} FROM calendar_accounts WHERE id = $1",
            account_id,
        )
        return CalendarAccount.model_validate(_row_to_dict(row)) if row else None

    async def list_accounts(self, user_id: str) -> list[CalendarAccount]:
        rows = await self._pool.fetch(
            f"SELECT {_ACCOUNT_COLUMNS} FROM calendar_accounts "
            "WHERE user_id = $1 AND is_active ORDER BY is_primary DESC, created_at",
            user_id,
        )
        return [CalendarAccount.model_validate(_row_to_dict(row)) for row in rows]

    async def get_token(self, account_id: str) -> OAuthToken | None:
        row = await self._pool.fetchrow(
            f"SELECT {_TOKEN_COLUMNS} FROM oauth_tokens WHERE account_id = $1",
            account_id,
        )
        return OAuthToken.model_validate(dict(row)) if row else None

    async def save_token(self, token: OAuthToken) -> None:
        await self._pool.execute(
            """
            INSERT INTO oauth_tokens (
                account_id, access_token, refresh_token, expires_at, token_refresh_count,
                last_token_refresh, error_count, last_error, last_error_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, now())
            ON CONFLICT (account_id) DO UPDATE SET
                access_token = EXCLUDED.access_token,
                refresh_token = EXCLUDED.refresh_token,
                expires_at = EXCLUDED.expires_at,
                token_refresh_count = EXCLUDED.token_refresh_count,
                last_token_refresh = EXCLUDED.last_token_refresh,
                error_count = EXCLUDED.error_count,
                last_error = EXCLUDED.last_error,
                last_error_at = EXCLUDED.last_error_at,
                updated_at = now()
            """,
            token.account_id,
            token.access_token,
            token.refresh_token,
            token.expires_at,
            token.token_refresh_count,
            token.last_token_refresh,
            token.error_count,
            token.last_error,
            token.last_error_at,
        )

    async def list_tokens_expiring_before(self, deadline: datetime) -> list[OAuthToken]:
        rows = await self._pool.fetch(
            f"""
            SELECT {", ".join("t." + c.strip() for c in _TOKEN_COLUMNS.split(","))}
            FROM oauth_tokens t
            JOIN calendar_accounts a ON a.id = t.account_id
            WHERE a.is_active AND t.expires_at <= $1
            ORDER BY t.expires_at
            """,
            deadline,
        )
        return [OAuthToken.model_validate(dict(row)) for row in rows]

    async def list_sync_users(self) -> list[str]:
        rows = await self._pool.fetch(
            "SELECT DISTINCT user_id FROM calendar_mappings WHERE sync_enabled ORDER BY user_id"
        )
        return [row["user_id"] for row in rows]

    # -- mappings -------------------------------------------------------------

    async def list_mappings(
        self,
        user_id: str,
        *,
        account_id: str | None = None,
        enabled_only: bool = True,
    ) -> list[CalendarMapping]:
        clauses = ["user_id = $1"]
        args: list[Any] = [user_id]
        if account_id is not None:
            args.append(account_id)
            clauses.append(f"account_id = ${len(args)}")
        if enabled_only:
            clauses.append("sync_enabled")
        rows = await self._pool.fetch(
            f"SELECT {_MAPPING_COLUMNS} FROM calendar_mappings "
            f"WHERE {' AND '.join(clauses)} ORDER BY is_primary DESC, created_at",
            *args,
        )
        return [_row_to_mapping(row) for row in rows]

    async def get_mapping(self, mapping_id: str) -> CalendarMapping | None:
        row = await self._pool.fetchrow(
            f"SELECT {_MAPPING_COLUMNS} FROM calendar_mappings WHERE id = $1",
            mapping_id,
        )
        return _row_to_mapping(row) if row else None

    async def save_sync_checkpoint(
        self, mapping_id: str, *, sync_token: str | None, synced_at: datetime
    ) -> None:
        await self._pool.execute(
            """
            UPDATE calendar_mappings
            SET last_sync_token = COALESCE($2, last_sync_token),
                last_sync_at = $3,
                last_error = NULL,
                error_count = 0,
                updated_at = now()
            WHERE id = $1
            """,
            mapping_id,
            sync_token,
            synced_at,
        )

    async def clear_sync_token(self, mapping_id: str) -> None:
        await self._pool.execute(
            "UPDATE calendar_mappings SET last_sync_token = NULL, updated_at = now() WHERE id = $1",
            mapping_id,
        )

    async def record_mapping_error(self, mapping_id: str, message: str) -> None:
        await self._pool.execute(
            """
            UPDATE calendar_mappings
            SET last_error = $2, error_count = error_count + 1, updated_at = now()
            WHERE id = $1
            """,
            mapping_id,
            message,
        )

    # -- events ---------------------------------------------------------------

    async def get_event_by_provider_id(
        self, mapping_id: str, provider_event_id: str
    ) -> CalendarEvent | None:
        row = await self._pool.fetchrow(
            f"SELECT {_EVENT_COLUMNS} FROM calendar_events "
            "WHERE mapping_id = $1 AND provider_event_id = $2",
            mapping_id,
            provider_event_id,
        )
        return _row_to_event(row) if row else None

    async def get_event(self, user_id: str, event_id: str) -> CalendarEvent | None:
        row = await self._pool.fetchrow(
            f"SELECT {_EVENT_COLUMNS} FROM calendar_events "
            "WHERE user_id = $1 AND id = $2 AND deleted_at IS NULL",
            user_id,
            event_id,
        )
        return _row_to_event(row) if row else None

    async def insert_event(self, event: CalendarEvent) -> CalendarEvent | None:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO calendar_events ({", ".join(_EVENT_WRITE_COLUMNS)})
            VALUES ({_placeholders()})
            ON CONFLICT (mapping_id, provider_event_id) DO NOTHING
            RETURNING {_EVENT_COLUMNS}
            """,
            *_event_values(event),
        )
        return _row_to_event(row) if row else None

    async def update_event(self, event: CalendarEvent) -> CalendarEvent:
        if event.id is None:
            raise ValueError("cannot update an event without an id")
        assignments = ", ".join(
            f"{column} = ${index + 2}{'::jsonb' if column in _EVENT_JSONB_COLUMNS else ''}"
            for index, column in enumerate(_EVENT_WRITE_COLUMNS)
        )
        row = await self._pool.fetchrow(
            f"""
            UPDATE calendar_events SET {assignments}, updated_at = now()
            WHERE id = $1
            RETURNING {_EVENT_COLUMNS}
            """,
            event.id,
            *_event_values(event),
        )
        if row is None:
            raise LookupError(f"calendar event {event.id} disappeared during update")
        return _row_to_event(row)

    async def soft_delete_event(
        self, mapping_id: str, provider_event_id: str, deleted_at: datetime
    ) -> bool:
        status = await self._pool.execute(
            """
            UPDATE calendar_events
            SET deleted_at = $3, status = 'cancelled', updated_at = now()
            WHERE mapping_id = $1 AND provider_event_id = $2 AND deleted_at IS NULL
            """,
            mapping_id,
            provider_event_id,
            deleted_at,
        )
        return status.endswith(" 1")

    async def list_conflicts(
        self, user_id: str, *, mapping_id: str | None = None
    ) -> list[CalendarEvent]:
        args: list[Any] = [user_id]
        where = "user_id = $1 AND conflict_detected AND deleted_at IS NULL"
        if mapping_id is not None:
            args.append(mapping_id)
            where += f" AND mapping_id = ${len(args)}"
        rows = await self._pool.fetch(
            f"SELECT {_EVENT_COLUMNS} FROM calendar_events WHERE {where} ORDER BY start_time",
            *args,
        )
        return [_row_to_event(row) for row in rows]

    # -- sync logs ------------------------------------------------------------

    async def append_sync_log(self, log: SyncLog) -> None:
        await self._pool.execute(
            """
            INSERT INTO calendar_sync_logs (
                user_id, mapping_id, sync_type, status, trigger, events_processed,
                events_created, events_updated, events_deleted, conflicts_detected,
                errors_encountered, duration_ms, sync_token, next_sync_token,
                error_message, started_at, completed_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
            """,
            log.user_id,
            log.mapping_id,
            str(log.sync_type),
            str(log.status),
            log.trigger,
            log.events_processed,
            log.events_created,
            log.events_updated,
            log.events_deleted,
            log.conflicts_detected,
            log.errors_encountered,
            log.duration_ms,
            log.sync_token,
            log.next_sync_token,
            log.error_message,
            log.started_at,
            log.completed_at,
        )

    async def list_sync_logs(
        self, user_id: str, *, mapping_id: str | None = None, limit: int = 50
    ) -> list[SyncLog]:
        args: list[Any] = [user_id]
        where = "user_id = $1"
        if mapping_id is not None:
            args.append(mapping_id)
            where += f" AND mapping_id = ${len(args)}"
        args.append(limit)
        rows = await self._pool.fetch(
            f"SELECT {_SYNC_LOG_COLUMNS} FROM calendar_sync_logs WHERE {where} "
            f"ORDER BY started_at DESC LIMIT ${len(args)}",
            *args,
        )
        return [SyncLog.model_validate(_row_to_dict(row)) for row in rows]

