"""Session token handling for the dashboard API.

Tokens are issued by the dashboard's login flow; this service only needs to
decode them and read the ``role`` claim.  ``create_access_token`` exists so
operators and tests can mint a token with the shared secret.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Request
from jose import jwt

from ceymail_mc.core.settings import settings

SESSION_MAX_AGE = timedelta(hours=8)
ADMIN_ROLE = "admin"


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta if expires_delta is not None else SESSION_MAX_AGE)
    to_encode.setdefault("iat", now)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.session_secret, algorithm=settings.algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token, settings.session_secret, algorithms=[settings.algorithm])


def extract_token(request: Request) -> Optional[str]:
    """Bearer header first, then the session cookie."""
    auth_header = request.headers.get("authorization") or ""
    if auth_header.lower().startswith("bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        if token:
            return token
    cookie = request.cookies.get(settings.session_cookie_name)
    return cookie or None
