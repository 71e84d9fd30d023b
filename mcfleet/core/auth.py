"""Session authentication for HTTP routes and WebSockets."""

import json
import os
from base64 import b64decode
from typing import Optional

from fastapi import HTTPException, Request, WebSocket
from itsdangerous import BadSignature, TimestampSigner

_admin_emails = os.getenv("ADMIN_EMAILS", "admin@example.com")
ADMIN_EMAILS = frozenset(
    email.strip().lower() for email in _admin_emails.split(",") if email.strip()
)

SESSION_COOKIE = "session"
SESSION_MAX_AGE = 14 * 24 * 60 * 60


def get_current_user(request: Request) -> Optional[dict]:
    """Extract user info from session."""
    return request.session.get("user_info")


def is_admin(user_info: Optional[dict]) -> bool:
    """Check if user has admin privileges."""
    if not user_info:
        return False
    return user_info.get("email", "").lower() in ADMIN_EMAILS


async def require_auth(request: Request) -> dict:
    """Require authenticated user."""
    user_info = get_current_user(request)
    if not user_info:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_info


async def require_admin(request: Request) -> dict:
    """Require admin user."""
    user_info = await require_auth(request)
    if not is_admin(user_info):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user_info


def _session_cookie(websocket: WebSocket) -> Optional[str]:
    cookie = websocket.cookies.get(SESSION_COOKIE)
    if cookie:
        return cookie
    for part in websocket.headers.get("cookie", "").split(";"):
        part = part.strip()
        if part.startswith(f"{SESSION_COOKIE}="):
            return part[len(SESSION_COOKIE) + 1:]
    return None


def decode_session_cookie(cookie: str, secret_key: str) -> Optional[dict]:
    """Decode a starlette SessionMiddleware cookie; None if tampered or expired."""
    try:
        data = TimestampSigner(secret_key).unsign(cookie.encode("utf-8"), max_age=SESSION_MAX_AGE)
        return json.loads(b64decode(data))
    except (BadSignature, ValueError):
        return None


def websocket_user(websocket: WebSocket) -> Optional[dict]:
    """Admin user_info for a WebSocket handshake, or None if not allowed.

    SessionMiddleware doesn't populate .session on WebSockets, so the cookie
    is verified by hand with the same secret.
    """
    secret_key = os.getenv("SECRET_KEY")
    cookie = _session_cookie(websocket)
    if not secret_key or not cookie:
        return None
    session_data = decode_session_cookie(cookie, secret_key)
    user_info = (session_data or {}).get("user_info")
    return user_info if is_admin(user_info) else None
