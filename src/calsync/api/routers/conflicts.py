"""Conflict endpoints: list pending conflicts and submit resolutions."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from calsync.api.deps import get_engine, get_user_id
from calsync.api.models import ApiResponse
from calsync.api.models.sync import ConflictEntry, ConflictResolveBody
from calsync.sync.engine import CalendarSyncEngine
from calsync.sync.models import ConflictResolutionSummary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conflicts", tags=["conflicts"])


@router.get("", response_model=ApiResponse[list[ConflictEntry]])
async def list_conflicts(
    user_id: str = Depends(get_user_id),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> ApiResponse[list[ConflictEntry]]:
    """Return events whose conflict is still waiting for a resolution."""
    events = await engine.list_conflicts(user_id)
    return ApiResponse[list[ConflictEntry]](data=[ConflictEntry.from_event(e) for e in events])


@router.post("/resolve", response_model=ApiResponse[ConflictResolutionSummary])
async def resolve_conflicts(
    body: ConflictResolveBody,
    user_id: str = Depends(get_user_id),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> ApiResponse[ConflictResolutionSummary]:
    """Apply explicit resolutions; returns counts of resolved, pending and failed items."""
    summary = await engine.resolve_conflicts(user_id, body.resolutions)
    logger.info(
        "Conflict resolution for user %s: resolved=%d pending=%d failed=%d",
        user_id,
        summary.resolved,
        summary.pending,
        summary.failed,
    )
    return ApiResponse[ConflictResolutionSummary](data=summary)
