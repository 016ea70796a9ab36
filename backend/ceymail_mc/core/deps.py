from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request, status
from jose import JWTError

from ceymail_mc.core.security import ADMIN_ROLE, decode_token, extract_token

logger = logging.getLogger("security")


@dataclass(frozen=True)
class SessionUser:
    user_id: int
    username: str
    role: str


def _log_auth_event(event: str, *, request: Request, extra: Optional[dict] = None) -> None:
    payload = {
        "event": event,
        "request_id": request.headers.get("x-request-id"),
        "path": request.url.path,
        "method": request.method,
        "client": request.client.host if request.client else None,
    }
    if extra:
        payload.update(extra)
    logger.info(json.dumps(payload, default=str))


def _forbidden() -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


def get_session_user(request: Request) -> SessionUser:
    token = extract_token(request)
    if not token:
        _log_auth_event("missing_token", request=request)
        raise _forbidden()
    try:
        payload = decode_token(token)
    except JWTError:
        _log_auth_event("invalid_token", request=request)
        raise _forbidden()

    try:
        user_id = int(payload.get("sub") or payload.get("userId"))
    except (TypeError, ValueError):
        _log_auth_event("invalid_subject", request=request)
        raise _forbidden()
    username = payload.get("username")
    role = payload.get("role")
    if not username or not role:
        _log_auth_event("incomplete_claims", request=request)
        raise _forbidden()
    return SessionUser(user_id=user_id, username=str(username), role=str(role))


def require_admin(request: Request) -> SessionUser:
    """Authorization gate: every backup route depends on this before doing any work."""
    user = get_session_user(request)
    if user.role != ADMIN_ROLE:
        _log_auth_event("admin_required", request=request, extra={"username": user.username})
        raise _forbidden()
    return user
