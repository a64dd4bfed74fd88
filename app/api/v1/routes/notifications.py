import asyncio
import json
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from app.db.session import get_db
from app.api.deps import get_current_user, get_stream_user, require_account_types
from app.core.config import settings
from app.models.user import User
from app.schemas.notification import MarkReadIn, BroadcastIn
from app.services import notification_service
from app.services.realtime import broadcast_to_all, connection_key, get_hub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["notifications"])


@router.get("/notifications")
def list_notifications(limit: int = 20, offset: int = 0, unread_only: bool = False,
                       db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return {"success": True, **notification_service.list_notifications(db, me.id, limit, offset, unread_only)}


@router.post("/notifications/mark-read")
def mark_read(body: MarkReadIn, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    if not body.markAll and not body.notificationIds:
        raise HTTPException(status_code=400, detail="notificationIds or markAll is required")
    updated = notification_service.mark_read(db, me.id, body.notificationIds, body.markAll)
    return {"success": True, "updated": updated}


@router.delete("/notifications/{notification_id}")
def delete_notification(notification_id: int, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    if not notification_service.delete_notification(db, me.id, notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}


def _event(payload: dict) -> dict:
    return {"data": json.dumps(payload, default=str)}


@router.get("/notifications/sse")
async def notification_stream(request: Request, me: User = Depends(get_stream_user)):
    key = connection_key(me.id, me.account_type)
    connection_id = f"{key}_{int(datetime.now(timezone.utc).timestamp() * 1000)}"

    async def events():
        async with get_hub().subscribe(key) as queue:
            yield _event({"type": "connection", "message": "Connected to notification stream",
                          "connectionId": connection_id, "timestamp": datetime.now(timezone.utc).isoformat()})
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=settings.SSE_PING_SECONDS)
                except asyncio.TimeoutError:
                    event = {"type": "ping", "timestamp": datetime.now(timezone.utc).isoformat()}
                yield _event(event)
        logger.debug("[SSE] %s closed", connection_id)

    return EventSourceResponse(events(), headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})


@router.post("/admin/notifications/broadcast")
def broadcast(body: BroadcastIn, me: User = Depends(require_account_types("admin"))):
    """Push a system notification to every open stream. Nothing is persisted."""
    delivered = broadcast_to_all({
        "title": body.title,
        "message": body.message,
        "type": body.type,
        "createdAt": datetime.now(timezone.utc).isoformat(),
    })
    logger.info("System notification '%s' pushed by admin %s (%s)", body.title, me.id, delivered)
    return {"success": True, "delivered": delivered}


@router.get("/admin/notifications/connections")
def open_connections(me: User = Depends(require_account_types("admin"))):
    return {"connections": get_hub().connection_count()}
