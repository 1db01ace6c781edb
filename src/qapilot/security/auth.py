"""Bearer-token identity for every workflow entry point.

Env vars:
- JWT_SECRET (required in prod; default for dev)
- JWT_EXPIRES_MIN (default 60)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..domain.errors import MissingIdentityError
from ..domain.models import Identity

logger = logging.getLogger("qapilot.auth")
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class JwtConfig:
    secret: str
    algorithm: str = "HS256"
    expires_min: int = 60

    @staticmethod
    def from_env() -> "JwtConfig":
        secret = os.getenv("JWT_SECRET", "dev-secret-change-me-before-deploying")
        expires = int(os.getenv("JWT_EXPIRES_MIN", "60"))
        return JwtConfig(secret=secret, expires_min=expires)


def create_access_token(identity: Identity, cfg: Optional[JwtConfig] = None) -> str:
    cfg = cfg or JwtConfig.from_env()
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=cfg.expires_min)
    payload = {
        "sub": identity.user_id,
        "email": identity.email,
        "name": identity.name,
        "roles": identity.roles,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, cfg.secret, algorithm=cfg.algorithm)


def decode_token(token: str, cfg: Optional[JwtConfig] = None) -> Identity:
    cfg = cfg or JwtConfig.from_env()
    try:
        data = jwt.decode(token, cfg.secret, algorithms=[cfg.algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if not data.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject")
    return Identity(
        user_id=str(data["sub"]),
        email=str(data.get("email") or ""),
        name=str(data.get("name") or ""),
        roles=list(data.get("roles") or []),
    )


def require_identity(identity: Optional[Identity]) -> Identity:
    """Reject a missing identity before any workflow state is touched."""
    if identity is None or not identity.user_id:
        raise MissingIdentityError()
    return identity


def get_current_identity(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Identity:
    if creds is None or not creds.scheme or creds.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    identity = decode_token(creds.credentials)
    logger.debug("identity_resolved", extra={"user_id": identity.user_id})
    return identity
