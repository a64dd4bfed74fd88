from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from app.db.session import get_db, SessionLocal
from app.core.security import AUTH_COOKIE, InvalidToken, extract_token, parse_auth_token
from app.models.user import User

bearer = HTTPBearer(auto_error=False)


def _resolve_user(db: Session, authorization: str | None, cookie: str | None) -> User:
    token = extract_token(authorization, cookie)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        ctx = parse_auth_token(token)
    except InvalidToken:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db.get(User, ctx.user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    if user.account_type != ctx.account_type:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user


def get_current_user(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    authorization = f"Bearer {creds.credentials}" if creds else None
    return _resolve_user(db, authorization, request.cookies.get(AUTH_COOKIE))


def get_optional_user(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> User | None:
    authorization = f"Bearer {creds.credentials}" if creds else None
    if not extract_token(authorization, request.cookies.get(AUTH_COOKIE)):
        return None
    return _resolve_user(db, authorization, request.cookies.get(AUTH_COOKIE))


def get_stream_user(request: Request, creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> User:
    """Auth for long-lived streams: uses its own short session so no connection is held open."""
    authorization = f"Bearer {creds.credentials}" if creds else None
    db = SessionLocal()
    try:
        user = _resolve_user(db, authorization, request.cookies.get(AUTH_COOKIE))
        db.expunge(user)
        return user
    finally:
        db.close()


def require_account_types(*account_types: str):
    def _guard(user: User = Depends(get_current_user)) -> User:
        if user.account_type not in account_types:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user
    return _guard


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
