from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.schemas.auth import LoginRequest, RegisterRequest, TokenOut
from app.models.user import User
from app.models.service_provider import ServiceProvider
from app.core.security import verify_password, hash_password, create_access_token
from app.api.deps import get_current_user

router = APIRouter(tags=["auth"])


def user_out(u: User) -> dict:
    return {
        "id": u.id,
        "email": u.email,
        "firstName": u.first_name,
        "lastName": u.last_name,
        "fullName": u.full_name,
        "accountType": u.account_type,
    }


@router.post("/auth/login", response_model=TokenOut)
def login(body: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == body.email.strip().lower()).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not verify_password(body.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return TokenOut(token=create_access_token(user.id, user.account_type, user.email), user=user_out(user))


@router.post("/auth/register", response_model=TokenOut)
def register(body: RegisterRequest, db: Session = Depends(get_db)):
    email = body.email.strip().lower()
    if not email or "@" not in email:
        raise HTTPException(status_code=400, detail="A valid email is required")
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=409, detail="email already exists")
    if body.accountType == "business" and not (body.businessName or "").strip():
        raise HTTPException(status_code=400, detail="businessName is required for business accounts")

    user = User(
        email=email,
        first_name=body.firstName.strip(),
        last_name=(body.lastName or "").strip(),
        phone=body.phone or "",
        account_type=body.accountType,
        password_hash=hash_password(body.password),
        is_active=True,
    )
    db.add(user)
    db.flush()
    if body.accountType == "business":
        db.add(ServiceProvider(user_id=user.id, name=body.businessName.strip(), provider_type="cremation"))
    db.commit()
    db.refresh(user)
    return TokenOut(token=create_access_token(user.id, user.account_type, user.email), user=user_out(user))


@router.get("/auth/me")
def me(me: User = Depends(get_current_user)):
    """Return current user info including account type."""
    return user_out(me)
