from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.api.deps import require_account_types, client_ip
from app.models.user import User
from app.models.payment import PaymentReceipt
from app.schemas.refund import RefundDecision
from app.services import refund_service
from app.services.refund_service import refund_out

router = APIRouter(tags=["cremation"])


@router.get("/cremation/refunds")
def provider_refunds(status: str | None = None, start_date: str | None = None, end_date: str | None = None,
                     db: Session = Depends(get_db), me: User = Depends(require_account_types("business"))):
    provider = refund_service.provider_for_user(db, me)
    rows = refund_service.query_refunds(db, status=status, start_date=start_date, end_date=end_date,
                                        provider_id=provider.id).all()
    receipts = {
        r.booking_id: r for r in db.query(PaymentReceipt)
        .filter(PaymentReceipt.booking_id.in_([b.id for _, b in rows] or [-1])).all()
    }
    items = []
    for refund, booking in rows:
        receipt = receipts.get(booking.id)
        items.append({
            **refund_out(refund),
            "petName": booking.pet_name,
            "bookingDate": booking.booking_date,
            "bookingPaymentStatus": booking.payment_status,
            "paymentReceipt": {
                "status": receipt.status,
                "referenceNumber": receipt.reference_number,
                "receiptPath": receipt.receipt_path,
            } if receipt else None,
        })
    return {"providerId": provider.id, "refunds": items}


@router.post("/cremation/refunds/{refund_id}/approve")
def approve(refund_id: int, body: RefundDecision, request: Request, db: Session = Depends(get_db),
            me: User = Depends(require_account_types("business"))):
    refund_service.provider_for_user(db, me)
    refund = refund_service.approve_refund(db, me, refund_id, body.notes, client_ip(request))
    return {"success": True, "message": f"Refund {refund.status}", "refund": refund_out(refund)}


@router.post("/cremation/refunds/{refund_id}/reject")
def reject(refund_id: int, body: RefundDecision, request: Request, db: Session = Depends(get_db),
           me: User = Depends(require_account_types("business"))):
    refund = refund_service.reject_refund(db, me, refund_id, body.reason or body.notes, client_ip(request))
    return {"success": True, "refund": refund_out(refund)}


@router.post("/cremation/refunds/{refund_id}/reset")
def reset(refund_id: int, body: RefundDecision, request: Request, db: Session = Depends(get_db),
          me: User = Depends(require_account_types("business"))):
    refund = refund_service.reset_refund(db, me, refund_id, body.notes or body.reason, client_ip(request))
    return {"success": True, "refund": refund_out(refund)}
