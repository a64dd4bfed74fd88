from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.api.deps import require_account_types, client_ip
from app.models.user import User
from app.models.service_provider import ServiceProvider
from app.schemas.refund import RefundDecision
from app.services import refund_service
from app.services.refund_service import refund_out

router = APIRouter(tags=["admin"])

MAX_LIST = 1000


@router.get("/admin/refunds")
def list_refunds(status: str | None = None, start_date: str | None = None, end_date: str | None = None,
                 search: str | None = None, provider_id: int | None = None, limit: int = 100, offset: int = 0,
                 db: Session = Depends(get_db), me: User = Depends(require_account_types("admin"))):
    q = refund_service.query_refunds(db, status=status, start_date=start_date, end_date=end_date,
                                     provider_id=provider_id, search=search)
    total = q.count()
    rows = q.limit(min(limit, MAX_LIST)).offset(max(offset, 0)).all()
    providers = {p.id: p.name for p in db.query(ServiceProvider).filter(
        ServiceProvider.id.in_({b.provider_id for _, b in rows} or {-1})).all()}
    return {
        "total": total,
        "refunds": [
            {**refund_out(r), "petName": b.pet_name, "providerId": b.provider_id, "providerName": providers.get(b.provider_id)}
            for r, b in rows
        ],
    }


@router.get("/admin/refunds/stats")
def refund_stats(db: Session = Depends(get_db), me: User = Depends(require_account_types("admin"))):
    return refund_service.refund_stats(db)


@router.get("/admin/refunds/retry-failed")
def retryable_refunds(db: Session = Depends(get_db), me: User = Depends(require_account_types("admin"))):
    rows = refund_service.list_retryable_refunds(db)
    return {"count": len(rows), "refunds": [refund_out(r) for r in rows]}


@router.post("/admin/refunds/retry-failed")
def retry_failed(db: Session = Depends(get_db), me: User = Depends(require_account_types("admin"))):
    return {"success": True, **refund_service.retry_failed_refunds(db, me)}


@router.post("/admin/refunds/{refund_id}/approve")
def approve(refund_id: int, body: RefundDecision, request: Request, db: Session = Depends(get_db),
            me: User = Depends(require_account_types("admin"))):
    refund = refund_service.approve_refund(db, me, refund_id, body.notes, client_ip(request))
    return {"success": True, "refund": refund_out(refund)}


@router.post("/admin/refunds/{refund_id}/deny")
def deny(refund_id: int, body: RefundDecision, request: Request, db: Session = Depends(get_db),
         me: User = Depends(require_account_types("admin"))):
    refund = refund_service.cancel_refund(db, me, refund_id, body.reason or body.notes, client_ip(request))
    return {"success": True, "message": "Refund request denied", "refund": refund_out(refund)}


@router.post("/admin/refunds/{refund_id}/retry")
def retry(refund_id: int, request: Request, db: Session = Depends(get_db),
          me: User = Depends(require_account_types("admin"))):
    refund = refund_service.retry_refund(db, me, refund_id, client_ip(request))
    return {"success": refund.status in refund_service.COMPLETED_STATUSES, "refund": refund_out(refund)}
