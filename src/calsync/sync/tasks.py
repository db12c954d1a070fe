"""Companion study-task emission to the external task service."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import httpx

from calsync.sync.models import CalendarEvent, TaskCreationRequest

logger = logging.getLogger(__name__)

STUDY_TASK_PREFIX = "Study: "


class TaskSink(Protocol):
    async def create_task(self, request: TaskCreationRequest) -> None: ...


class LoggingTaskSink:
    """Sink used when no task service is configured; records requests in the log only."""

    async def create_task(self, request: TaskCreationRequest) -> None:
        logger.info(
            "Task service not configured; dropping study task %r for user %s",
            request.title,
            request.user_id,
        )


class HttpTaskSink:
    """POSTs task creation requests as JSON to ``{base_url}/tasks``."""

    def __init__(self, base_url: str, http_client: httpx.AsyncClient) -> None:
        self._url = f"{base_url.rstrip('/')}/tasks"
        self._http_client = http_client

    async def create_task(self, request: TaskCreationRequest) -> None:
        response = await self._http_client.post(
            self._url,
            json={
                "userId": request.user_id,
                "subjectId": request.subject_id,
                "title": request.title,
                "dueDate": request.due_date.isoformat(),
                "estimatedMinutes": request.estimated_minutes,
                "sourceEventId": request.source_event_id,
            },
            headers={"X-User-Id": request.user_id},
        )
        response.raise_for_status()


def build_study_task(event: CalendarEvent) -> TaskCreationRequest:
    duration = int((event.end_time - event.start_time).total_seconds() // 60)
    return TaskCreationRequest(
        user_id=event.user_id,
        subject_id=event.subject_id,
        title=f"{STUDY_TASK_PREFIX}{event.title}",
        due_date=event.end_time,
        estimated_minutes=max(duration, 0),
        source_event_id=event.id,
    )


async def emit_study_task(
    sink: TaskSink, request: TaskCreationRequest, *, timeout_s: float = 10.0
) -> bool:
    """Send ``request`` to ``sink``; failures are logged and reported as ``False``."""
    try:
        await asyncio.wait_for(sink.create_task(request), timeout=timeout_s)
    except Exception:
        logger.warning(
            "Study task creation failed for event %s (user %s)",
            request.source_event_id,
            request.user_id,
            exc_info=True,
        )
        return False
    return True
