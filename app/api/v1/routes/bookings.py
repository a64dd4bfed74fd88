from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.api.deps import get_current_user, require_account_types, client_ip
from app.models.user import User
from app.schemas.booking import BookingCreate, BookingCancel, RefundRequestIn
from app.services import booking_service, refund_service

router = APIRouter(tags=["bookings"])


@router.post("/bookings")
def create_booking(body: BookingCreate, db: Session = Depends(get_db),
                   me: User = Depends(require_account_types("fur_parent"))):
    b = booking_service.create_booking(
        db, me, body.packageId, body.petName, body.bookingDate, body.bookingTime,
        body.paymentMethod, body.specialRequests or "",
    )
    return {"success": True, "booking": booking_service.booking_out(b)}


@router.get("/bookings")
def list_bookings(status: str | None = None, limit: int = 50, offset: int = 0,
                  db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    q = booking_service.visible_bookings(db, me, status)
    total = q.count()
    rows = q.limit(min(limit, 200)).offset(max(offset, 0)).all()
    return {"total": total, "bookings": [booking_service.booking_out(b) for b in rows]}


@router.get("/bookings/{booking_id}")
def get_booking(booking_id: int, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    b = booking_service.get_booking_for(db, me, booking_id)
    return {"booking": booking_service.booking_out(b)}


@router.post("/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: int, body: BookingCancel, db: Session = Depends(get_db),
                   me: User = Depends(require_account_types("fur_parent"))):
    result = booking_service.cancel_booking(db, me, booking_id, body.reason or "")
    refund = result["refund"]
    return {
        "success": True,
        "booking": booking_service.booking_out(result["booking"]),
        "refund": refund_service.refund_out(refund) if refund else None,
    }


@router.post("/bookings/refund-request")
def request_refund(body: RefundRequestIn, request: Request, db: Session = Depends(get_db),
                   me: User = Depends(require_account_types("fur_parent"))):
    refund = refund_service.request_refund(db, me, body.bookingId, body.amount, body.reason, client_ip(request))
    return {
        "success": True,
        "message": "Refund request submitted successfully",
        "refund": refund_service.refund_out(refund),
    }
