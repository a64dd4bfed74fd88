import pytest
from jose import jwt

from app.core.config import settings
from app.core.security import (
    InvalidToken,
    create_access_token,
    extract_token,
    hash_password,
    parse_auth_token,
    verify_password,
)


def test_password_hash_roundtrip():
    h = hash_password("correct horse")
    assert verify_password("correct horse", h)
    assert not verify_password("wrong horse", h)


def test_jwt_token_resolves_user_and_account_type():
    token = create_access_token(42, "business", "center@example.com")
    ctx = parse_auth_token(token)
    assert ctx.user_id == 42
    assert ctx.account_type == "business"
    assert ctx.legacy is False


def test_jwt_signed_with_another_key_is_rejected():
    claims = jwt.get_unverified_claims(create_access_token(42, "business"))
    forged = jwt.encode(claims, "not-the-server-key", algorithm="HS256")
    with pytest.raises(InvalidToken):
        parse_auth_token(forged)


def test_expired_jwt_is_rejected():
    token = create_access_token(42, "admin", expires_minutes=-5)
    with pytest.raises(InvalidToken):
        parse_auth_token(token)


@pytest.mark.parametrize("token,user_id,account_type", [
    ("7_fur_parent", 7, "fur_parent"),
    ("7_business", 7, "business"),
    ("7_admin", 7, "admin"),
    ("7_user", 7, "fur_parent"),
])
def test_legacy_tokens(token, user_id, account_type):
    ctx = parse_auth_token(token)
    assert (ctx.user_id, ctx.account_type, ctx.legacy) == (user_id, account_type, True)


@pytest.mark.parametrize("token", ["abc_admin", "7_superuser", "_admin", "7", ""])
def test_malformed_legacy_tokens(token):
    with pytest.raises(InvalidToken):
        parse_auth_token(token)


def test_legacy_tokens_can_be_switched_off(monkeypatch):
    monkeypatch.setattr(settings, "ALLOW_LEGACY_TOKENS", False)
    with pytest.raises(InvalidToken):
        parse_auth_token("7_admin")


def test_extract_token_prefers_bearer_header():
    assert extract_token("Bearer abc.def.ghi", "7_admin") == "abc.def.ghi"


def test_extract_token_falls_back_to_cookie():
    assert extract_token(None, "7_fur_parent") == "7_fur_parent"
    assert extract_token("Basic xyz", "7%5Fbusiness") == "7_business"


def test_extract_token_ignores_unrecognised_cookie():
    assert extract_token(None, "garbage") is None
    assert extract_token(None, None) is None
