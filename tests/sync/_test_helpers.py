"""Shared fakes and factories for the calendar sync tests.

``InMemorySyncStore`` implements the full ``SyncStore`` contract over dicts,
including insert-or-no-op on ``(mapping_id, provider_event_id)``.
``FakeProvider`` replays scripted pages per calendar and records every call.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from calsync.sync.conflicts import ConflictResolver
from calsync.sync.locks import MappingLocks
from calsync.sync.models import (
    CalendarAccount,
    CalendarEvent,
    CalendarMapping,
    Credential,
    EventStatus,
    OAuthToken,
    ProviderPage,
    SyncLog,
    TaskCreationRequest,
    TimeWindow,
    TokenGrant,
)
from calsync.sync.orchestrator import SyncOrchestrator, SyncSettings
from calsync.sync.provider import DEFAULT_PAGE_SIZE, CalendarProvider
from calsync.sync.reconciler import EventReconciler
from calsync.sync.retry import ProviderCaller, RetryPolicy
from calsync.sync.tokens import TokenManager
from calsync.sync.webhook import WebhookIntake

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
USER_ID = "user-1"
ACCOUNT_ID = "acct-1"
MAPPING_ID = "map-1"
CALENDAR_ID = "primary"


def fixed_clock() -> datetime:
    return NOW


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_account(account_id: str = ACCOUNT_ID, **overrides: Any) -> CalendarAccount:
    fields: dict[str, Any] = {
        "id": account_id,
        "user_id": USER_ID,
        "provider_email": f"{account_id}@example.com",
        "is_primary": True,
    }
    fields.update(overrides)
    return CalendarAccount(**fields)


def make_token(
    account_id: str = ACCOUNT_ID,
    *,
    expires_in: timedelta = timedelta(hours=1),
    **overrides: Any,
) -> OAuthToken:
    fields: dict[str, Any] = {
        "account_id": account_id,
        "access_token": f"access-{account_id}",
        "refresh_token": f"refresh-{account_id}",
        "expires_at": NOW + expires_in,
    }
    fields.update(overrides)
    return OAuthToken(**fields)


def make_mapping(mapping_id: str = MAPPING_ID, **overrides: Any) -> CalendarMapping:
    fields: dict[str, Any] = {
        "id": mapping_id,
        "user_id": USER_ID,
        "account_id": ACCOUNT_ID,
        "provider_calendar_id": CALENDAR_ID,
        "calendar_name": "Personal",
        "is_primary": True,
    }
    fields.update(overrides)
    return CalendarMapping(**fields)


def google_event(
    event_id: str,
    summary: str = "Lunch with Sam",
    *,
    start: datetime | None = None,
    duration: timedelta = timedelta(hours=1),
    status: str = "confirmed",
    updated: str = "2026-03-01T10:00:00Z",
    sequence: int = 0,
    **extra: Any,
) -> dict[str, Any]:
    """Build a Google Calendar v3 event payload."""
    begin = start or NOW + timedelta(days=1)
    payload: dict[str, Any] = {
        "id": event_id,
        "summary": summary,
        "status": status,
        "start": {"dateTime": begin.isoformat(), "timeZone": "UTC"},
        "end": {"dateTime": (begin + duration).isoformat(), "timeZone": "UTC"},
        "updated": updated,
        "sequence": sequence,
    }
    payload.update(extra)
    return payload


def cancelled_event(event_id: str) -> dict[str, Any]:
    return {"id": event_id, "status": "cancelled"}


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemorySyncStore:
    """Dict-backed ``SyncStore``; returned models are copies, like rows from a DB."""

    def __init__(self) -> None:
        self.accounts: dict[str, CalendarAccount] = {}
        self.tokens: dict[str, OAuthToken] = {}
        self.mappings: dict[str, CalendarMapping] = {}
        self.events: dict[str, CalendarEvent] = {}
        self.logs: list[SyncLog] = []
        self.checkpoints: list[tuple[str, str | None]] = []
        self._ids = itertools.count(1)

    # -- seeding ------------------------------------------------------------

    def add_account(self, account: CalendarAccount, token: OAuthToken | None = None) -> None:
        self.accounts[account.id] = account
        if token is not None:
            self.tokens[token.account_id] = token

    def add_mapping(self, mapping: CalendarMapping) -> None:
        self.mappings[mapping.id] = mapping

    def add_event(self, event: CalendarEvent) -> CalendarEvent:
        stored = event if event.id else event.model_copy(update={"id": f"evt-{next(self._ids)}"})
        self.events[stored.id] = stored
        return stored.model_copy()

    def event_for(self, provider_event_id: str, mapping_id: str = MAPPING_ID) -> CalendarEvent:
        for event in self.events.values():
            if event.mapping_id == mapping_id and event.provider_event_id == provider_event_id:
                return event.model_copy()
        raise KeyError(provider_event_id)

    # -- accounts and tokens -----------------------------------------------

    async def get_account(self, account_id: str) -> CalendarAccount | None:
        account = self.accounts.get(account_id)
        return account.model_copy() if account else None

    async def list_accounts(self, user_id: str) -> list[CalendarAccount]:
        return [a.model_copy() for a in self.accounts.values() if a.user_id == user_id]

    async def get_token(self, account_id: str) -> OAuthToken | None:
        token = self.tokens.get(account_id)
        return token.model_copy() if token else None

    async def save_token(self, token: OAuthToken) -> None:
        self.tokens[token.account_id] = token.model_copy()

    async def list_tokens_expiring_before(self, deadline: datetime) -> list[OAuthToken]:
        return [
            token.model_copy()
            for token in self.tokens.values()
            if token.expires_at <= deadline
            and self.accounts.get(token.account_id) is not None
            and self.accounts[token.account_id].is_active
        ]

    async def list_sync_users(self) -> list[str]:
        return sorted({m.user_id for m in self.mappings.values() if m.sync_enabled})

    # -- mappings -------------------------------------------------------------

    async def list_mappings(
        self,
        user_id: str,
        *,
        account_id: str | None = None,
        enabled_only: bool = True,
    ) -> list[CalendarMapping]:
        selected = [
            m
            for m in self.mappings.values()
            if m.user_id == user_id
            and (account_id is None or m.account_id == account_id)
            and (m.sync_enabled or not enabled_only)
        ]
        selected.sort(key=lambda m: not m.is_primary)
        return [m.model_copy() for m in selected]

    async def get_mapping(self, mapping_id: str) -> CalendarMapping | None:
        mapping = self.mappings.get(mapping_id)
        return mapping.model_copy() if mapping else None

    async def save_sync_checkpoint(
        self, mapping_id: str, *, sync_token: str | None, synced_at: datetime
    ) -> None:
        mapping = self.mappings[mapping_id]
        self.checkpoints.append((mapping_id, sync_token))
        self.mappings[mapping_id] = mapping.model_copy(
            update={
                "last_sync_token": sync_token or mapping.last_sync_token,
                "last_sync_at": synced_at,
                "last_error": None,
                "error_count": 0,
            }
        )

    async def clear_sync_token(self, mapping_id: str) -> None:
        mapping = self.mappings[mapping_id]
        self.mappings[mapping_id] = mapping.model_copy(update={"last_sync_token": None})

    async def record_mapping_error(self, mapping_id: str, message: str) -> None:
        mapping = self.mappings[mapping_id]
        self.mappings[mapping_id] = mapping.model_copy(
            update={"last_error": message, "error_count": mapping.error_count + 1}
        )

    # -- events ---------------------------------------------------------------

    async def get_event_by_provider_id(
        self, mapping_id: str, provider_event_id: str
    ) -> CalendarEvent | None:
        try:
            return self.event_for(provider_event_id, mapping_id)
        except KeyError:
            return None

    async def get_event(self, user_id: str, event_id: str) -> CalendarEvent | None:
        event = self.events.get(event_id)
        if event is None or event.user_id != user_id or event.is_deleted:
            return None
        return event.model_copy()

    async def insert_event(self, event: CalendarEvent) -> CalendarEvent | None:
        if await self.get_event_by_provider_id(event.mapping_id, event.provider_event_id):
            return None
        return self.add_event(event.model_copy(update={"id": None}))

    async def update_event(self, event: CalendarEvent) -> CalendarEvent:
        if event.id is None or event.id not in self.events:
            raise LookupError(f"calendar event {event.id} disappeared during update")
        self.events[event.id] = event.model_copy()
        return event.model_copy()

    async def soft_delete_event(
        self, mapping_id: str, provider_event_id: str, deleted_at: datetime
    ) -> bool:
        for event_id, event in self.events.items():
            if (
                event.mapping_id == mapping_id
                and event.provider_event_id == provider_event_id
                and not event.is_deleted
            ):
                self.events[event_id] = event.model_copy(
                    update={"deleted_at": deleted_at, "status": EventStatus.CANCELLED}
                )
                return True
        return False

    async def list_conflicts(
        self, user_id: str, *, mapping_id: str | None = None
    ) -> list[CalendarEvent]:
        flagged = [
            e
            for e in self.events.values()
            if e.user_id == user_id and e.conflict_detected and not e.is_deleted
            and (mapping_id is None or e.mapping_id == mapping_id)
        ]
        flagged.sort(key=lambda e: e.start_time)
        return [e.model_copy() for e in flagged]

    # -- sync logs ------------------------------------------------------------

    async def append_sync_log(self, log: SyncLog) -> None:
        self.logs.append(log.model_copy(update={"id": f"log-{len(self.logs) + 1}"}))

    async def list_sync_logs(
        self, user_id: str, *, mapping_id: str | None = None, limit: int = 50
    ) -> list[SyncLog]:
        selected = [
            log
            for log in reversed(self.logs)
            if log.user_id == user_id and (mapping_id is None or log.mapping_id == mapping_id)
        ]
        return selected[:limit]


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


@dataclass
class ListCall:
    credential: Credential
    calendar_id: str
    sync_token: str | None
    time_window: TimeWindow | None
    page_token: str | None
    page_size: int


class FakeProvider(CalendarProvider):
    """Scripted provider: each ``list_events`` call consumes the next scripted response.

    A scripted ``Exception`` is raised instead of returned.  An exhausted
    script answers with an empty terminal page.
    """

    def __init__(self) -> None:
        self.scripts: dict[str, list[ProviderPage | Exception]] = {}
        self.events: dict[tuple[str, str], dict[str, Any] | Exception] = {}
        self.grants: list[TokenGrant | Exception] = []
        self.list_calls: list[ListCall] = []
        self.get_calls: list[tuple[str, str]] = []
        self.refresh_calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    @property
    def name(self) -> str:
        return "fake"

    def script(self, calendar_id: str, *responses: ProviderPage | Exception) -> None:
        self.scripts.setdefault(calendar_id, []).extend(responses)

    async def list_events(
        self,
        credential: Credential,
        calendar_id: str,
        *,
        sync_token: str | None = None,
        time_window: TimeWindow | None = None,
        page_token: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ProviderPage:
        self.list_calls.append(
            ListCall(credential, calendar_id, sync_token, time_window, page_token, page_size)
        )
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        queue = self.scripts.get(calendar_id) or []
        if not queue:
            return ProviderPage()
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def get_event(
        self, credential: Credential, calendar_id: str, event_id: str
    ) -> dict[str, Any]:
        self.get_calls.append((calendar_id, event_id))
        response = self.events[(calendar_id, event_id)]
        if isinstance(response, Exception):
            raise response
        return response

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls.append(refresh_token)
        await asyncio.sleep(0)
        if not self.grants:
            return TokenGrant(
                access_token=f"fresh-{len(self.refresh_calls)}",
                expires_at=NOW + timedelta(hours=1),
            )
        grant = self.grants.pop(0)
        if isinstance(grant, Exception):
            raise grant
        return grant


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class RecordingTaskSink:
    def __init__(self, error: Exception | None = None) -> None:
        self.requests: list[TaskCreationRequest] = []
        self.error = error

    async def create_task(self, request: TaskCreationRequest) -> None:
        self.requests.append(request)
        if self.error is not None:
            raise self.error


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@dataclass
class SyncStack:
    store: InMemorySyncStore
    provider: FakeProvider
    tokens: TokenManager
    caller: ProviderCaller
    reconciler: EventReconciler
    resolver: ConflictResolver
    orchestrator: SyncOrchestrator
    webhooks: WebhookIntake
    task_sink: RecordingTaskSink
    sleep: RecordingSleep = field(default_factory=RecordingSleep)


def build_stack(
    store: InMemorySyncStore | None = None,
    provider: FakeProvider | None = None,
    *,
    task_sink: RecordingTaskSink | None = None,
    settings: SyncSettings | None = None,
) -> SyncStack:
    """Wire the real sync components over the in-memory fakes."""
    store = store or InMemorySyncStore()
    provider = provider or FakeProvider()
    task_sink = task_sink or RecordingTaskSink()
    sleep = RecordingSleep()
    tokens = TokenManager(store, provider, sleep=sleep, clock=fixed_clock)
    caller = ProviderCaller(tokens, RetryPolicy(max_attempts=3, timeout_s=5.0), sleep=sleep)
    reconciler = EventReconciler(store, task_sink, clock=fixed_clock)
    resolver = ConflictResolver(store, clock=fixed_clock)
    orchestrator = SyncOrchestrator(
        store,
        provider,
        caller,
        reconciler,
        resolver,
        locks=MappingLocks(),
        settings=settings,
        clock=fixed_clock,
    )
    return SyncStack(
        store=store,
        provider=provider,
        tokens=tokens,
        caller=caller,
        reconciler=reconciler,
        resolver=resolver,
        orchestrator=orchestrator,
        webhooks=WebhookIntake(store, orchestrator),
        task_sink=task_sink,
        sleep=sleep,
    )


def seeded_store(*mappings: CalendarMapping) -> InMemorySyncStore:
    """Store with the default account, a valid token, and ``mappings`` (default: one)."""
    store = InMemorySyncStore()
    store.add_account(make_account(), make_token())
    for mapping in mappings or (make_mapping(),):
        store.add_mapping(mapping)
    return store


def page(
    *items: dict[str, Any],
    next_page_token: str | None = None,
    next_sync_token: str | None = None,
) -> ProviderPage:
    return ProviderPage(
        items=list(items), next_page_token=next_page_token, next_sync_token=next_sync_token
    )
