"""Tests for calsync.sync.scheduler: periodic passes, job retries and token sweeps."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from calsync.sync.errors import ProviderRequestError
from calsync.sync.models import SyncResult
from calsync.sync.scheduler import SchedulerSettings, SyncScheduler
from calsync.sync.tokens import TokenManager
from tests.sync._test_helpers import (
    NOW,
    FakeProvider,
    InMemorySyncStore,
    RecordingSleep,
    fixed_clock,
    make_account,
    make_mapping,
    make_token,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def store() -> InMemorySyncStore:
    store = InMemorySyncStore()
    store.add_account(make_account("acct-1"), make_token("acct-1"))
    store.add_account(make_account("acct-2", user_id="user-2"), make_token("acct-2"))
    store.add_mapping(make_mapping("map-1", account_id="acct-1"))
    store.add_mapping(make_mapping("map-2", user_id="user-2", account_id="acct-2"))
    store.add_mapping(make_mapping("map-3", user_id="user-3", sync_enabled=False))
    return store


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def orchestrator() -> MagicMock:
    orchestrator = MagicMock()
    orchestrator.incremental_sync = AsyncMock(return_value=SyncResult(mappings_synced=1))
    orchestrator.full_sync = AsyncMock(return_value=SyncResult(mappings_synced=1))
    return orchestrator


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


def _scheduler(store, orchestrator, provider, sleep, **settings) -> SyncScheduler:
    tokens = TokenManager(store, provider, sleep=sleep, clock=fixed_clock)
    return SyncScheduler(
        store,
        orchestrator,
        tokens,
        SchedulerSettings(**settings),
        sleep=sleep,
        clock=fixed_clock,
    )


# ------------------------------------------------------------------
# Sync passes
# ------------------------------------------------------------------


async def test_incremental_pass_covers_every_sync_user(store, orchestrator, provider, sleep):
    scheduler = _scheduler(store, orchestrator, provider, sleep)

    results = await scheduler.run_incremental_pass()

    assert set(results) == {"user-1", "user-2"}
    orchestrator.incremental_sync.assert_has_awaits(
        [call("user-1", trigger="scheduler"), call("user-2", trigger="scheduler")],
        any_order=True,
    )
    orchestrator.full_sync.assert_not_awaited()


async def test_full_pass_uses_full_sync(store, orchestrator, provider, sleep):
    scheduler = _scheduler(store, orchestrator, provider, sleep)

    results = await scheduler.run_full_pass()

    assert set(results) == {"user-1", "user-2"}
    assert orchestrator.full_sync.await_count == 2
    orchestrator.incremental_sync.assert_not_awaited()


async def test_failed_job_is_retried_with_backoff(store, orchestrator, provider, sleep):
    outcomes = {"user-1": [RuntimeError("db blip"), SyncResult(events_created=4)]}

    async def _incremental(user_id, *, trigger):
        queue = outcomes.get(user_id)
        if not queue:
            return SyncResult()
        outcome = queue.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    orchestrator.incremental_sync = AsyncMock(side_effect=_incremental)
    scheduler = _scheduler(store, orchestrator, provider, sleep)

    results = await scheduler.run_incremental_pass()

    assert results["user-1"].events_created == 4
    assert sleep.delays == [30.0]


async def test_exhausted_job_does_not_affect_other_users(store, orchestrator, provider, sleep):
    async def _incremental(user_id, *, trigger):
        if user_id == "user-1":
            raise RuntimeError("persistent failure")
        return SyncResult(mappings_synced=1)

    orchestrator.incremental_sync = AsyncMock(side_effect=_incremental)
    scheduler = _scheduler(store, orchestrator, provider, sleep, retry_attempts=3)

    results = await scheduler.run_incremental_pass()

    assert set(results) == {"user-2"}
    assert sleep.delays == [30.0, 60.0]


async def test_single_attempt_job_fails_without_sleeping(store, orchestrator, provider, sleep):
    calls: list[str] = []

    async def _incremental(user_id, *, trigger):
        calls.append(user_id)
        if user_id == "user-1":
            raise RuntimeError("persistent failure")
        return SyncResult(mappings_synced=1)

    orchestrator.incremental_sync = AsyncMock(side_effect=_incremental)
    scheduler = _scheduler(store, orchestrator, provider, sleep, retry_attempts=1)

    results = await scheduler.run_incremental_pass()

    assert set(results) == {"user-2"}
    assert calls.count("user-1") == 1
    assert sleep.delays == []


async def test_last_attempt_error_is_what_surfaces(store, orchestrator, provider, sleep, caplog):
    failures = iter([RuntimeError("first"), RuntimeError("second"), RuntimeError("third")])

    async def _incremental(user_id, *, trigger):
        if user_id == "user-1":
            raise next(failures)
        return SyncResult()

    orchestrator.incremental_sync = AsyncMock(side_effect=_incremental)
    scheduler = _scheduler(store, orchestrator, provider, sleep, retry_attempts=3)

    with caplog.at_level("ERROR", logger="calsync.sync.scheduler"):
        await scheduler.run_incremental_pass()

    assert "failed after 3 attempt(s): third" in caplog.text
    assert sleep.delays == [30.0, 60.0]


def test_retry_delay_is_exponential_and_capped():
    settings = SchedulerSettings(retry_base_delay_s=30, retry_max_delay_s=300)
    assert [settings.retry_delay(i) for i in range(5)] == [30, 60, 120, 240, 300]


# ------------------------------------------------------------------
# Token sweep
# ------------------------------------------------------------------


async def test_token_sweep_refreshes_only_expiring_tokens(store, orchestrator, provider, sleep):
    store.tokens["acct-1"] = make_token("acct-1", expires_in=timedelta(minutes=2))
    scheduler = _scheduler(store, orchestrator, provider, sleep, token_refresh_lead_s=300)

    refreshed = await scheduler.refresh_expiring_tokens()

    assert refreshed == 1
    assert provider.refresh_calls == ["refresh-acct-1"]
    assert store.tokens["acct-1"].access_token == "fresh-1"
    assert store.tokens["acct-1"].expires_at == NOW + timedelta(hours=1)


async def test_token_sweep_skips_failed_refresh(store, orchestrator, provider, sleep):
    store.tokens["acct-1"] = make_token("acct-1", expires_in=timedelta(minutes=1))
    store.tokens["acct-2"] = make_token("acct-2", expires_in=timedelta(minutes=1))
    provider.grants.append(ProviderRequestError(status_code=400, message="invalid_grant"))
    scheduler = _scheduler(store, orchestrator, provider, sleep)

    refreshed = await scheduler.refresh_expiring_tokens()

    assert refreshed == 1
    assert store.tokens["acct-1"].error_count == 1
    assert store.tokens["acct-2"].access_token == "fresh-2"


async def test_token_sweep_ignores_inactive_accounts(store, orchestrator, provider, sleep):
    store.add_account(make_account("acct-1", is_active=False))
    store.tokens["acct-1"] = make_token("acct-1", expires_in=timedelta(minutes=1))
    scheduler = _scheduler(store, orchestrator, provider, sleep)

    assert await scheduler.refresh_expiring_tokens() == 0
    assert provider.refresh_calls == []


# ------------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------------


async def test_start_and_stop(store, orchestrator, provider):
    scheduler = _scheduler(store, orchestrator, provider, asyncio.sleep)

    scheduler.start()
    scheduler.start()
    assert scheduler.running is True

    await scheduler.stop()
    assert scheduler.running is False
    orchestrator.incremental_sync.assert_not_awaited()


async def test_loop_survives_failing_jobs(store, orchestrator, provider):
    orchestrator.incremental_sync = AsyncMock(side_effect=RuntimeError("boom"))
    scheduler = _scheduler(
        store,
        orchestrator,
        provider,
        asyncio.sleep,
        incremental_interval_s=0.01,
        full_interval_s=60,
        token_sweep_interval_s=60,
        retry_attempts=1,
    )

    scheduler.start()
    await asyncio.sleep(0.1)
    await scheduler.stop()

    assert orchestrator.incremental_sync.await_count >= 2
