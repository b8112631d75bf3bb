"""
Session cookie handling and the auth gate for protected routes.
Cookie extraction, token verification and user lookup are separate steps so each
can be tested without an HTTP layer.
"""
import logging
import re
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from wokauth import config
from wokauth.database import get_db
from wokauth.errors import UNAUTHORIZED, ApiError
from wokauth.models import User
from wokauth.tokens import verify

logger = logging.getLogger(__name__)

_USER_ID_RE = re.compile(r"^[0-9a-f]{32}$")


def get_signing_secret() -> bytes:
    """Dependency: HMAC secret for session tokens."""
    return config.JWT_SECRET


def session_cookie_kwargs(value: str) -> dict:
    return {
        "key": config.COOKIE_NAME,
        "value": value,
        "max_age": config.SESSION_TTL_SECONDS,
        "httponly": True,
        "secure": True,
        "samesite": "lax",
        "path": "/",
    }


def clear_session_cookie_kwargs() -> dict:
    return {
        "key": config.COOKIE_NAME,
        "value": "",
        "max_age": 0,
        "httponly": True,
        "secure": True,
        "samesite": "lax",
        "path": "/",
    }


def extract_session_token(request: Request) -> str | None:
    """Session token from the wokspec_session cookie, or None."""
    token = request.cookies.get(config.COOKIE_NAME)
    return token or None


def is_user_id(value: object) -> bool:
    return isinstance(value, str) and _USER_ID_RE.match(value) is not None


def authenticate(db: Session, token: str | None, secret: bytes) -> User | None:
    """Verify a session token and load its user. None on any failure."""
    if not token:
        return None
    payload = verify(token, secret)
    if payload is None:
        return None
    sub = payload.get("sub")
    if not is_user_id(sub):
        logger.debug("Session token has malformed subject")
        return None
    return db.get(User, sub)


def require_user(
    request: Request,
    db: Annotated[Session, Depends(get_db)],
    secret: Annotated[bytes, Depends(get_signing_secret)],
) -> User:
    """
    Dependency: resolve the session cookie to a User or raise 401.
    The user is also placed on request.state.user for downstream handlers.
    """
    token = extract_session_token(request)
    if token is None:
        raise ApiError(UNAUTHORIZED, "Not authenticated", 401)
    user = authenticate(db, token, secret)
    if user is None:
        # Bad signature, expired token and deleted user look the same to the client
        raise ApiError(UNAUTHORIZED, "Invalid session", 401)
    request.state.user = user
    return user


CurrentUser = Annotated[User, Depends(require_user)]
