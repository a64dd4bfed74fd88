import logging
from datetime import datetime, timezone
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from app.models.notification import Notification
from app.models.service_provider import ServiceProvider
from app.models.user import User
from app.services.realtime import broadcast_to_user

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50


def notification_out(n: Notification) -> dict:
    return {
        "id": n.id,
        "userId": n.user_id,
        "title": n.title,
        "message": n.message,
        "type": n.type,
        "link": n.link,
        "isRead": bool(n.status) or n.read_at is not None,
        "readAt": n.read_at.isoformat() if n.read_at else None,
        "createdAt": n.created_at.isoformat() if n.created_at else None,
    }


def create_notification(db: Session, user_id: int, title: str, message: str, type: str = "info",
                        link: str | None = None) -> Notification:
    """Persist an in-app notification and push it to the user's open SSE connections."""
    n = Notification(user_id=user_id, title=title, message=message, type=type, link=link, status=0)
    db.add(n)
    db.commit()
    db.refresh(n)

    user = db.get(User, user_id)
    if user:
        try:
            broadcast_to_user(user.id, user.account_type, notification_out(n))
        except Exception:
            logger.exception("Realtime push for notification %s failed", n.id)
    return n


def notify_user(db: Session, user_id: int | None, title: str, message: str, type: str = "info",
                link: str | None = None) -> Notification | None:
    """Best-effort: a failed notification never undoes the caller's state change."""
    if not user_id:
        return None
    try:
        return create_notification(db, user_id, title, message, type=type, link=link)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not notify user %s (%s)", user_id, title)
        return None


def notify_business(db: Session, provider_id: int, title: str, message: str, type: str = "info",
                    link: str | None = None) -> Notification | None:
    provider = db.get(ServiceProvider, provider_id)
    if not provider:
        logger.warning("Provider %s not found; skipping notification '%s'", provider_id, title)
        return None
    return notify_user(db, provider.user_id, title, message, type=type, link=link)


def notify_admins(db: Session, title: str, message: str, type: str = "info", link: str | None = None) -> int:
    admins = db.query(User).filter(User.account_type == "admin", User.is_active == True).all()  # noqa: E712
    sent = 0
    for admin in admins:
        if notify_user(db, admin.id, title, message, type=type, link=link):
            sent += 1
    return sent


def list_notifications(db: Session, user_id: int, limit: int = 20, offset: int = 0, unread_only: bool = False) -> dict:
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    offset = max(offset, 0)
    q = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        q = q.filter(Notification.status == 0)
    total = q.count()
    rows = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).offset(offset).all()
    unread = db.query(Notification).filter(Notification.user_id == user_id, Notification.status == 0).count()
    return {
        "notifications": [notification_out(n) for n in rows],
        "pagination": {"total": total, "limit": limit, "offset": offset, "hasMore": offset + len(rows) < total},
        "unreadCount": unread,
    }


def mark_read(db: Session, user_id: int, notification_ids: list[int] | None = None, mark_all: bool = False) -> int:
    q = db.query(Notification).filter(Notification.user_id == user_id, Notification.status == 0)
    if not mark_all:
        if not notification_ids:
            return 0
        q = q.filter(Notification.id.in_(notification_ids))
    now = datetime.now(timezone.utc)
    updated = 0
    for n in q.all():
        n.status = 1
        n.read_at = now
        updated += 1
    db.commit()
    return updated


def delete_notification(db: Session, user_id: int, notification_id: int) -> bool:
    n = db.get(Notification, notification_id)
    if not n or n.user_id != user_id:
        return False
    db.delete(n)
    db.commit()
    return True
