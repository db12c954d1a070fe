"""Provider push-notification endpoint.

Google delivers channel metadata in ``X-Goog-*`` headers with an empty
body.  Unknown channels, accounts and disabled mappings answer ``200`` with
a no-op ``SyncResult`` so the provider does not retry them.
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Header, Request

from calsync.api.deps import get_engine, get_optional_user_id
from calsync.api.models import ApiResponse
from calsync.api.models.sync import WebhookBody
from calsync.sync.engine import CalendarSyncEngine
from calsync.sync.models import SyncResult
from calsync.sync.webhook import WebhookNotification

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhook"])


async def _read_body(request: Request) -> WebhookBody:
    raw = await request.body()
    if not raw.strip():
        return WebhookBody()
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("webhook body must be a JSON object")
    return WebhookBody.model_validate(payload)


@router.post("/{account_id}", response_model=ApiResponse[SyncResult])
async def receive_webhook(
    account_id: str,
    request: Request,
    channel_id: str | None = Header(default=None, alias="X-Goog-Channel-ID"),
    resource_id: str | None = Header(default=None, alias="X-Goog-Resource-ID"),
    resource_state: str | None = Header(default=None, alias="X-Goog-Resource-State"),
    message_number: int | None = Header(default=None, alias="X-Goog-Message-Number"),
    user_id: str | None = Depends(get_optional_user_id),
    engine: CalendarSyncEngine = Depends(get_engine),
) -> ApiResponse[SyncResult]:
    """Trigger an incremental pass for the calendar named by a push notification."""
    body = await _read_body(request)
    notification = WebhookNotification(
        channel_id=channel_id,
        resource_id=resource_id,
        resource_state=resource_state,
        message_number=message_number,
        calendar_id=body.calendar_id,
    )
    result = await engine.handle_webhook(account_id, notification, user_id)
    return ApiResponse[SyncResult](data=result)
