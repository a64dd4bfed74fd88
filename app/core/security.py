from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import unquote

from jose import jwt, JWTError
from passlib.context import CryptContext

from app.core.config import settings

# PBKDF2 avoids bcrypt backend/version issues and the 72-byte bcrypt input limit.
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
ALGO = "HS256"

ACCOUNT_TYPES = ("fur_parent", "business", "admin")
AUTH_COOKIE = "auth_token"
# older clients wrote "user" for pet owners
LEGACY_ACCOUNT_ALIASES = {"user": "fur_parent"}


class InvalidToken(Exception):
    pass


@dataclass(frozen=True)
class AuthContext:
    user_id: int
    account_type: str
    legacy: bool = False


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_access_token(user_id: int, account_type: str, email: str = "", expires_minutes: int | None = None) -> str:
    if expires_minutes is None:
        expires_minutes = settings.ACCESS_TOKEN_EXPIRE_MINUTES
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "userId": str(user_id),
        "accountType": account_type,
        "email": email,
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGO)


def decode_token(token: str) -> dict:
    return jwt.decode(
        token,
        settings.SECRET_KEY,
        algorithms=[ALGO],
        audience=settings.JWT_AUDIENCE,
        issuer=settings.JWT_ISSUER,
    )


def _parse_user_id(raw) -> int:
    try:
        return int(str(raw))
    except (TypeError, ValueError):
        raise InvalidToken("Invalid user id in token")


def parse_auth_token(token: str) -> AuthContext:
    """Resolve a token to (user id, account type).

    A token containing '.' is a signed JWT. Anything else is the legacy
    "<userId>_<accountType>" form, which must split into exactly two parts.
    """
    if not token:
        raise InvalidToken("Missing token")

    if "." in token:
        try:
            payload = decode_token(token)
        except JWTError as e:
            raise InvalidToken(str(e))
        raw_id = payload.get("sub") or payload.get("userId")
        account_type = payload.get("accountType")
        if not raw_id or account_type not in ACCOUNT_TYPES:
            raise InvalidToken("Token is missing required claims")
        return AuthContext(user_id=_parse_user_id(raw_id), account_type=account_type)

    if not settings.ALLOW_LEGACY_TOKENS:
        raise InvalidToken("Legacy tokens are disabled")
    # "fur_parent" itself contains an underscore, so only the first one separates the id
    user_part, _, account_type = token.partition("_")
    account_type = LEGACY_ACCOUNT_ALIASES.get(account_type, account_type)
    if not user_part or account_type not in ACCOUNT_TYPES:
        raise InvalidToken("Malformed token")
    return AuthContext(user_id=_parse_user_id(user_part), account_type=account_type, legacy=True)


def extract_token(authorization: str | None, cookie_value: str | None) -> str | None:
    """Bearer header first, then the auth_token cookie."""
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return token
    if cookie_value:
        token = unquote(cookie_value)
        if "." in token or "_" in token:
            return token
    return None
