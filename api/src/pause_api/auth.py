"""
Bearer session verification.

Sessions are issued by the auth service; this module only checks the JWT
signature and expiry and exposes the ``sub`` claim as the caller's user id.
"""
from __future__ import annotations

import datetime as dt

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import get_auth_config
from .errors import Unauthorized

# auto_error would answer 403 on a missing header; callers expect 401.
security = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, *, expires_in: dt.timedelta | None = None) -> str:
    config = get_auth_config()
    if expires_in is None:
        expires_in = dt.timedelta(hours=config.access_token_expire_hours)
    expire = dt.datetime.now(dt.timezone.utc) + expires_in
    return jwt.encode({"sub": user_id, "exp": expire}, config.secret_key, algorithm=config.algorithm)


def decode_token(token: str) -> dict | None:
    config = get_auth_config()
    try:
        return jwt.decode(token, config.secret_key, algorithms=[config.algorithm])
    except JWTError:
        return None


def get_current_user_id(credentials: HTTPAuthorizationCredentials | None = Depends(security)) -> str:
    if credentials is None:
        raise Unauthorized()

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise Unauthorized()

    user_id = payload.get("sub")
    if not user_id or payload.get("exp") is None:
        raise Unauthorized()
    return str(user_id)
