import hmac
from fastapi import APIRouter, Depends, HTTPException, Header
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.api.deps import get_optional_user
from app.core.config import settings
from app.models.user import User
from app.services.email_service import process_pending_emails

router = APIRouter(tags=["cron"])


def _authorize_cron(secret: str | None, user: User | None) -> None:
    if secret and settings.CRON_SECRET and hmac.compare_digest(secret, settings.CRON_SECRET):
        return
    if user is not None and user.account_type == "admin":
        return
    raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/cron/process-queue")
def process_queue(limit: int = 50,
                  x_cron_secret: str | None = Header(default=None),
                  db: Session = Depends(get_db), me: User | None = Depends(get_optional_user)):
    _authorize_cron(x_cron_secret, me)
    return {"success": True, "emails": process_pending_emails(db, limit=limit)}
