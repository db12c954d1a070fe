"""Sync endpoints: trigger passes and inspect sync history.

Every sync endpoint returns ``200`` with a ``SyncResult`` even when some
calendars failed; callers read ``errorsEncountered`` instead of status codes.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, Query

from calsync.api.deps import get_engine, get_user_id
from calsync.api.models import ApiResponse
from calsync.api.models.sync import SyncRequest
from calsync.sync.engine import CalendarSyncEngine
from calsync.sync.models import SyncLog, SyncResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/full", response_model=ApiResponse[SyncResult])
async def full_sync(
    body: SyncRequest | None = Body(default=None),
    user_id: str = Depends(get_user_id),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> ApiResponse[SyncResult]:
    """Run a windowed full pass over the user's enabled mappings."""
    account_id = body.account_id if body else None
    result = await engine.full_sync(user_id, account_id)
    return ApiResponse[SyncResult](data=result)


@router.post("/incremental", response_model=ApiResponse[SyncResult])
async def incremental_sync(
    body: SyncRequest | None = Body(default=None),
    user_id: str = Depends(get_user_id),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> ApiResponse[SyncResult]:
    """Run a token-driven incremental pass over the user's enabled mappings."""
    account_id = body.account_id if body else None
    result = await engine.incremental_sync(user_id, account_id)
    return ApiResponse[SyncResult](data=result)


@router.post("/event/{event_id}", response_model=ApiResponse[SyncResult])
async def sync_event(
    event_id: str,
    user_id: str = Depends(get_user_id),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> ApiResponse[SyncResult]:
    """Re-fetch one local event from the provider and reconcile it."""
    result = await engine.sync_single_event(user_id, event_id)
    return ApiResponse[SyncResult](data=result)


@router.get("/logs", response_model=ApiResponse[list[SyncLog]])
async def list_sync_logs(
    mapping_id: str | None = Query(default=None, alias="mappingId"),
    limit: int = Query(default=50, ge=1, le=500),
    user_id: str = Depends(get_user_id),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> ApiResponse[list[SyncLog]]:
    """Return the user's most recent sync log entries, newest first."""
    logs = await engine.list_sync_logs(user_id, mapping_id=mapping_id, limit=limit)
    return ApiResponse[list[SyncLog]](data=logs)
