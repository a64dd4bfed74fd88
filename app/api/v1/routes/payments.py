import json
import logging
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.api.deps import require_account_types, get_current_user
from app.core.config import settings
from app.models.user import User
from app.models.payment import PaymentReceipt
from app.schemas.payments import OfflineReceiptIn, OfflineReviewIn
from app.services import booking_service, payment_service
from app.services.paymongo_client import verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


@router.post("/payments/offline/receipt")
def submit_receipt(body: OfflineReceiptIn, db: Session = Depends(get_db),
                   me: User = Depends(require_account_types("fur_parent"))):
    receipt = payment_service.submit_offline_receipt(db, me, body.bookingId, body.receiptPath or "",
                                                     body.referenceNumber or "", body.notes)
    return {"success": True, "receipt": payment_service.receipt_out(receipt)}


@router.post("/payments/offline/confirm")
def review_receipt(body: OfflineReviewIn, db: Session = Depends(get_db),
                   me: User = Depends(require_account_types("business", "admin"))):
    receipt = payment_service.review_offline_receipt(db, me, body.bookingId, body.action, body.reason)
    return {"success": True, "receipt": payment_service.receipt_out(receipt)}


@router.get("/payments/status")
def payment_status(booking_id: int, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    b = booking_service.get_booking_for(db, me, booking_id)
    receipt = db.query(PaymentReceipt).filter(PaymentReceipt.booking_id == b.id).first()
    return {
        "bookingId": b.id,
        "paymentStatus": b.payment_status,
        "paymentMethod": b.payment_method,
        "receipt": payment_service.receipt_out(receipt) if receipt else None,
    }


@router.post("/payments/webhook")
async def paymongo_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    if settings.PAYMONGO_WEBHOOK_SECRET:
        if not verify_webhook_signature(body, request.headers.get("paymongo-signature"), settings.PAYMONGO_WEBHOOK_SECRET):
            logger.warning("PayMongo webhook rejected: bad signature")
            raise HTTPException(status_code=401, detail="Invalid signature")
    try:
        event = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    event_type = payment_service.handle_webhook_event(db, event)
    return {"success": True, "message": "Webhook processed", "type": event_type}


@router.get("/payments/webhook")
def webhook_reachable():
    return {"message": "PayMongo webhook endpoint"}
