import jwt
import pytest
from fastapi import HTTPException

from src.qapilot.domain.errors import MissingIdentityError
from src.qapilot.domain.models import Identity
from src.qapilot.security.auth import JwtConfig, create_access_token, decode_token, require_identity

from .fakes import USER

CFG = JwtConfig(secret="auth-test-secret-0123456789-abcdefghij")


def test_token_round_trip_keeps_identity():
    token = create_access_token(USER, CFG)
    assert decode_token(token, CFG) == USER


def test_expired_token_is_rejected():
    token = create_access_token(USER, JwtConfig(secret=CFG.secret, expires_min=-1))
    with pytest.raises(HTTPException) as exc:
        decode_token(token, CFG)
    assert exc.value.status_code == 401
    assert exc.value.detail == "Token expired"


def test_token_signed_with_another_secret_is_rejected():
    token = create_access_token(USER, JwtConfig(secret="some-other-secret-0123456789-abcdefg"))
    with pytest.raises(HTTPException) as exc:
        decode_token(token, CFG)
    assert exc.value.detail == "Invalid token"


def test_token_without_subject_is_rejected():
    token = jwt.encode({"email": "a@b.c"}, CFG.secret, algorithm=CFG.algorithm)
    with pytest.raises(HTTPException) as exc:
        decode_token(token, CFG)
    assert exc.value.detail == "Token has no subject"


def test_require_identity():
    assert require_identity(USER) is USER
    with pytest.raises(MissingIdentityError):
        require_identity(None)
    with pytest.raises(MissingIdentityError):
        require_identity(Identity(user_id="", email="nobody@example.com"))
