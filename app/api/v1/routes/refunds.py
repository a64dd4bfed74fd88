from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.api.deps import get_current_user, require_account_types, client_ip
from app.models.user import User
from app.schemas.refund import RefundInitiate, RefundAction, RefundReceiptIn
from app.services import refund_service
from app.services.refund_service import refund_out

router = APIRouter(tags=["refunds"])


@router.post("/refunds")
def initiate_refund(body: RefundInitiate, request: Request, db: Session = Depends(get_db),
                    me: User = Depends(require_account_types("admin", "business"))):
    result = refund_service.initiate_refund(db, me, body.bookingId, body.amount, body.reason or "",
                                            body.notes, client_ip(request))
    return {
        "success": True,
        "refundId": result["refund"].id,
        "refund": refund_out(result["refund"]),
        "refundType": result["refundType"],
        "message": result["message"],
        "requiresManualProcessing": result["requiresManualProcessing"],
        "instructions": result["instructions"],
    }


@router.get("/refunds")
def list_refunds(booking_id: int | None = None, status: str | None = None,
                 db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    provider_id = None
    user_id = None
    if me.account_type == "fur_parent":
        user_id = me.id
    elif me.account_type == "business":
        provider_id = refund_service.provider_for_user(db, me).id
    rows = refund_service.query_refunds(db, status=status, booking_id=booking_id,
                                        provider_id=provider_id, user_id=user_id).limit(500).all()
    return {"refunds": [refund_out(r) for r, _ in rows]}


@router.get("/refunds/{refund_id}")
def get_refund(refund_id: int, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return {"refund": refund_service.get_refund_for(db, me, refund_id)}


@router.put("/refunds/{refund_id}")
def update_refund(refund_id: int, body: RefundAction, request: Request, db: Session = Depends(get_db),
                  me: User = Depends(require_account_types("admin", "business"))):
    ip = client_ip(request)
    if body.action == "approve_refund":
        refund = refund_service.approve_refund(db, me, refund_id, body.notes, ip)
    elif body.action == "reject_refund":
        refund = refund_service.reject_refund(db, me, refund_id, body.reason or body.notes, ip)
    elif body.action == "reset_refund":
        refund = refund_service.reset_refund(db, me, refund_id, body.notes or body.reason, ip)
    elif body.action == "retry_refund":
        if me.account_type != "admin":
            raise HTTPException(status_code=403, detail="Only admins can retry refunds")
        refund = refund_service.retry_refund(db, me, refund_id, ip)
    elif body.action == "verify_receipt":
        if body.approved is None:
            raise HTTPException(status_code=400, detail="approved is required for verify_receipt")
        refund = refund_service.verify_receipt(db, me, refund_id, body.approved, body.reason, ip)
    elif body.action == "update_status":
        if me.account_type != "admin":
            raise HTTPException(status_code=403, detail="Only admins can set refund status directly")
        if not body.status:
            raise HTTPException(status_code=400, detail="status is required for update_status")
        refund = refund_service.update_status(db, me, refund_id, body.status, body.notes, ip)
    elif body.action == "add_notes":
        refund = refund_service.add_notes(db, me, refund_id, body.notes or "", ip)
    else:
        raise HTTPException(status_code=400, detail=f"Unknown action: {body.action}")
    return {"success": True, "refund": refund_out(refund)}


@router.post("/refunds/{refund_id}/receipt")
def upload_refund_receipt(refund_id: int, body: RefundReceiptIn, request: Request, db: Session = Depends(get_db),
                          me: User = Depends(require_account_types("admin", "business"))):
    refund = refund_service.upload_receipt(db, me, refund_id, body.receiptPath, client_ip(request))
    return {"success": True, "refund": refund_out(refund)}


@router.get("/customer/refunds")
def my_refunds(db: Session = Depends(get_db), me: User = Depends(require_account_types("fur_parent"))):
    rows = refund_service.query_refunds(db, user_id=me.id).all()
    return {"refunds": [{**refund_out(r), "petName": b.pet_name, "bookingDate": b.booking_date} for r, b in rows]}


@router.post("/customer/refunds/{refund_id}/cancel")
def withdraw_refund(refund_id: int, request: Request, db: Session = Depends(get_db),
                    me: User = Depends(require_account_types("fur_parent"))):
    refund = refund_service.cancel_refund(db, me, refund_id, "Withdrawn by customer", client_ip(request))
    return {"success": True, "refund": refund_out(refund)}
