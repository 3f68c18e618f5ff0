"""Notification API routes and the live WebSocket channel."""
import json
import logging
import uuid
from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from fileflow.exceptions import ValidationFault
from fileflow.models.base import utcnow
from fileflow.routes.deps import get_current_user, get_services
from fileflow.schemas.notification import (
    NotificationMetricResponse, NotificationStatsResponse, SubscriptionRequest,
)
from fileflow.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])
ws_router = APIRouter(tags=["notifications"])


@router.post("/subscriptions", status_code=201)
async def subscribe(
    body: SubscriptionRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    sub = await services.dispatcher.subscribe(user_id, body.item_id, body.item_type)
    return {"itemId": sub.item_id, "itemType": sub.item_type, "active": sub.is_active}


@router.post("/subscriptions/remove")
async def unsubscribe(
    body: SubscriptionRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    removed = await services.dispatcher.unsubscribe(user_id, body.item_id, body.item_type)
    return {"itemId": body.item_id, "itemType": body.item_type, "removed": removed}


@router.get("/stats", response_model=NotificationStatsResponse)
async def get_stats(
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return NotificationStatsResponse(**await services.dispatcher.get_stats(user_id))


@router.get("/metrics", response_model=list[NotificationMetricResponse])
async def get_metrics(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Hourly delivery metrics, last 7 days by default."""
    end = end or utcnow().date()
    start = start or end - timedelta(days=7)
    rows = await services.dispatcher.get_metrics(start, end)
    return [
        NotificationMetricResponse(
            event_date=r.event_date.isoformat(),
            hour_of_day=r.hour_of_day,
            active_connections=r.active_connections,
            messages_sent=r.messages_sent,
            messages_received=r.messages_received,
            messages_queued=r.messages_queued,
            errors_count=r.errors_count,
        )
        for r in rows
    ]


async def _handle_client_message(services: Services, user_id: str, message: dict) -> dict:
    action = message.get("action")
    if action == "ping":
        return {"type": "PONG"}
    if action in ("subscribe", "unsubscribe"):
        item_id, item_type = message.get("itemId"), message.get("itemType")
        if not item_id or not item_type:
            raise ValidationFault("itemId and itemType are required")
        if action == "subscribe":
            await services.dispatcher.subscribe(user_id, str(item_id), item_type)
        else:
            await services.dispatcher.unsubscribe(user_id, str(item_id), item_type)
        return {"type": "ACK", "action": action, "itemId": item_id, "itemType": item_type}
    raise ValidationFault(f"Unknown action: {action}")


@ws_router.websocket("/api/ws")
async def notification_socket(websocket: WebSocket):
    """Live notifications. Pending queued notifications are flushed on connect."""
    user_id = websocket.headers.get("x-user-id") or websocket.query_params.get("userId")
    if not user_id:
        await websocket.close(code=1008)
        return
    services: Services = websocket.app.state.services
    await services.ledger.ensure_user(user_id)
    await websocket.accept()

    connection_id = str(uuid.uuid4())
    await services.dispatcher.record_connect(
        user_id, connection_id, websocket,
        ip_address=websocket.client.host if websocket.client else None,
        user_agent=websocket.headers.get("user-agent"),
    )
    try:
        await services.dispatcher.process_queued_for(user_id)
        while True:
            raw = await websocket.receive_text()
            await services.dispatcher.touch(connection_id)
            try:
                reply = await _handle_client_message(services, user_id, json.loads(raw))
            except (ValueError, ValidationFault, AttributeError) as e:
                reply = {"type": "ERROR", "detail": str(e)}
            await websocket.send_json(reply)
    except WebSocketDisconnect:
        logger.debug(f"WebSocket {connection_id} closed by client")
    finally:
        await services.dispatcher.record_disconnect(connection_id)
