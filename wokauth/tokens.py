"""
Session token codec: compact HS256 JWTs (header.payload.signature, base64url, no padding).
Tokens are signed, not encrypted; never put secrets in the payload.
"""
import json
import logging
import time
from typing import Any

import jwt

from wokauth.config import SESSION_TTL_SECONDS

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

# Signing and verification happen at the JWS layer: PyJWT checks the signature and
# algorithm, and the payload is any JSON object. Only exp is interpreted, below.
_jws = jwt.PyJWS()


def sign(payload: dict[str, Any], secret: bytes) -> str:
    """Encode payload as a signed token: base64url(header).base64url(payload).base64url(HMAC-SHA256)."""
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    token = _jws.encode(body, secret, algorithm=ALGORITHM, headers={"typ": "JWT"})
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return token


def verify(token: str, secret: bytes, *, now: int | None = None) -> dict[str, Any] | None:
    """
    Verify signature and expiry. Returns the payload, or None if the token is malformed,
    wrongly signed, not a JSON object, or has a numeric exp at or before now. Never raises.
    """
    if not isinstance(token, str) or token.count(".") != 2:
        return None
    try:
        body = _jws.decode(token, secret, algorithms=[ALGORITHM])
        payload = json.loads(body)
    except jwt.InvalidTokenError as e:
        logger.debug("Session token rejected: %s", e)
        return None
    except ValueError:
        logger.debug("Session token payload is not JSON")
        return None
    if not isinstance(payload, dict):
        return None

    exp = payload.get("exp")
    if isinstance(exp, (int, float)) and not isinstance(exp, bool):
        current = int(time.time()) if now is None else now
        if exp <= current:
            logger.debug("Session token expired")
            return None
    return payload


def mint_session(user_id: str, secret: bytes, *, ttl: int = SESSION_TTL_SECONDS, now: int | None = None) -> str:
    """Session token for a user: sub = user id, exp = now + ttl."""
    issued = int(time.time()) if now is None else now
    return sign({"sub": user_id, "iat": issued, "exp": issued + ttl}, secret)
