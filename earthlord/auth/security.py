from __future__ import annotations

import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from earthlord.core import config
from earthlord.core.errors import NotAuthenticated

# Tokens are issued by the deploying system's login flow; this service only verifies them.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)

# Simple in-memory rate limiter: player_id -> (window_start_epoch_sec, count)
_RATE_LIMIT_STATE: Dict[str, tuple[int, int]] = {}


def reset_rate_limits() -> None:
    _RATE_LIMIT_STATE.clear()


def create_access_token(player_id: str, additional_claims: Optional[Dict[str, Any]] = None, expires_minutes: Optional[int] = None) -> str:
    expire_delta = expires_minutes if expires_minutes is not None else config.ACCESS_TOKEN_EXPIRE_MINUTES
    expire = datetime.now(timezone.utc) + timedelta(minutes=expire_delta)
    to_encode: Dict[str, Any] = {"sub": str(player_id), "exp": expire, "jti": str(uuid.uuid4())}
    if additional_claims:
        to_encode.update(additional_claims)
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])


def player_id_from_token(token: Optional[str]) -> str:
    """Return the opaque player id carried in a bearer token's ``sub`` claim."""
    if not token:
        raise NotAuthenticated()
    try:
        payload = decode_token(token)
    except JWTError as exc:
        raise NotAuthenticated("Could not validate credentials") from exc
    sub = payload.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        raise NotAuthenticated("Invalid token payload")
    return sub.strip()


async def get_current_player_id(token: Optional[str] = Depends(oauth2_scheme)) -> str:
    return player_id_from_token(token)


def rate_limit_check(player_id: str) -> None:
    now = int(time.time())
    window_start = now - (now % 60)
    state = _RATE_LIMIT_STATE.get(player_id)
    if state is None or state[0] != window_start:
        _RATE_LIMIT_STATE[player_id] = (window_start, 1)
        return
    count = state[1] + 1
    if count > config.RATE_LIMIT_PER_MINUTE:
        raise HTTPException(status_code=429, detail="Rate limit exceeded")
    _RATE_LIMIT_STATE[player_id] = (window_start, count)


async def rate_limiter_dependency(player_id: str = Depends(get_current_player_id)) -> None:
    rate_limit_check(player_id)


__all__ = [
    "oauth2_scheme",
    "create_access_token",
    "decode_token",
    "player_id_from_token",
    "get_current_player_id",
    "rate_limit_check",
    "rate_limiter_dependency",
    "reset_rate_limits",
]
