import logging
from decimal import Decimal

from sqlalchemy.orm import Session
from sqlalchemy import text
from sqlalchemy.exc import ProgrammingError

from app.db.session import SessionLocal
from app.core.config import settings
from app.core.security import hash_password
from app.models.user import User
from app.models.service_provider import ServiceProvider, ServicePackage

logger = logging.getLogger(__name__)

DEMO_PACKAGES = [
    ("Private Cremation", "Individual cremation with urn and certificate", Decimal("4500.00")),
    ("Communal Cremation", "Shared cremation, ashes not returned", Decimal("1500.00")),
    ("Memorial Package", "Private cremation, paw print keepsake and memorial service", Decimal("7800.00")),
]


def ensure_user(db: Session, email: str, password: str, account_type: str, first_name: str, last_name: str = "") -> User:
    u = db.query(User).filter(User.email == email).first()
    if u:
        return u
    u = User(
        email=email,
        first_name=first_name,
        last_name=last_name,
        account_type=account_type,
        password_hash=hash_password(password),
        is_active=True,
    )
    db.add(u)
    db.commit()
    return u


def ensure_provider(db: Session, owner: User, name: str) -> ServiceProvider:
    p = db.query(ServiceProvider).filter(ServiceProvider.user_id == owner.id).first()
    if p:
        return p
    p = ServiceProvider(user_id=owner.id, name=name, provider_type="cremation", status="active")
    db.add(p)
    db.commit()
    return p


def run(db=None):
    if db is None:
        db = SessionLocal()
    try:
        # If migrations haven't been applied yet, seeding must not crash the API.
        try:
            db.execute(text("SELECT 1 FROM users LIMIT 1"))
        except ProgrammingError:
            db.rollback()
            logger.warning("[seed] users table not found yet. Skipping seeding (run alembic upgrade head).")
            return

        ensure_user(db, "admin@rainbowpaws.local", "admin12345", "admin", "Admin")
        if settings.ENV != "local":
            return

        owner = ensure_user(db, "cremation@rainbowpaws.local", "business12345", "business", "Rainbow", "Bridge")
        provider = ensure_provider(db, owner, "Rainbow Bridge Pet Cremation")
        ensure_user(db, "furparent@rainbowpaws.local", "furparent12345", "fur_parent", "Juan", "Dela Cruz")

        if not db.query(ServicePackage).filter(ServicePackage.provider_id == provider.id).first():
            for name, description, price in DEMO_PACKAGES:
                db.add(ServicePackage(provider_id=provider.id, name=name, description=description, price=price))
            db.commit()
        logger.info("[seed] done")
    finally:
        db.close()


if __name__ == "__main__":
    run()
