from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.api.deps import require_account_types
from app.models.user import User
from app.models.service_provider import ServicePackage, ServiceProvider
from app.schemas.package import PackageCreate, PackageUpdate
from app.services.audit_service import log_audit

router = APIRouter(tags=["packages"])


def package_out(p: ServicePackage) -> dict:
    return {
        "id": p.id,
        "providerId": p.provider_id,
        "name": p.name,
        "description": p.description,
        "price": float(p.price),
        "isActive": p.is_active,
    }


@router.get("/packages")
def list_packages(provider_id: int | None = None, db: Session = Depends(get_db)):
    q = db.query(ServicePackage).filter(ServicePackage.is_active == True)  # noqa: E712
    if provider_id:
        q = q.filter(ServicePackage.provider_id == provider_id)
    return {"packages": [package_out(p) for p in q.order_by(ServicePackage.price.asc()).all()]}


@router.post("/packages")
def create_package(body: PackageCreate, db: Session = Depends(get_db),
                   me: User = Depends(require_account_types("business"))):
    provider = db.query(ServiceProvider).filter(ServiceProvider.user_id == me.id).first()
    if not provider:
        raise HTTPException(status_code=404, detail="Service provider not found")
    p = ServicePackage(provider_id=provider.id, name=body.name.strip(), description=body.description or "",
                       price=Decimal(str(body.price)), is_active=True)
    db.add(p)
    db.flush()
    log_audit(db, me.id, "package.created", "package", p.id, {"name": p.name, "price": body.price})
    db.commit()
    return {"success": True, "package": package_out(p)}


@router.patch("/packages/{package_id}")
def update_package(package_id: int, body: PackageUpdate, db: Session = Depends(get_db),
                   me: User = Depends(require_account_types("business"))):
    p = db.get(ServicePackage, package_id)
    if not p:
        raise HTTPException(status_code=404, detail="not found")
    provider = db.get(ServiceProvider, p.provider_id)
    if not provider or provider.user_id != me.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    if body.name is not None:
        p.name = body.name.strip()
    if body.description is not None:
        p.description = body.description
    if body.price is not None:
        p.price = Decimal(str(body.price))
    if body.isActive is not None:
        p.is_active = body.isActive
    log_audit(db, me.id, "package.updated", "package", p.id, body.model_dump(exclude_none=True))
    db.commit()
    return {"success": True, "package": package_out(p)}
