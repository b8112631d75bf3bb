"""
Single-use OAuth state nonces (anti-CSRF), kept in a TTL key-value store.
Issued at /auth/{provider}, consumed at the callback.
"""
import secrets

from wokauth.config import STATE_TTL_SECONDS
from wokauth.kv_store import KeyValueStore

STATE_KEY_PREFIX = "oauth_state:"


def _state_key(nonce: str) -> str:
    return f"{STATE_KEY_PREFIX}{nonce}"


def issue_state(kv: KeyValueStore, ttl_seconds: int = STATE_TTL_SECONDS) -> str:
    """128-bit random value, hex-encoded; stored presence-only with a TTL."""
    nonce = secrets.token_hex(16)
    kv.set(_state_key(nonce), "1", ttl_seconds)
    return nonce


def consume_state(kv: KeyValueStore, nonce: str | None) -> bool:
    """
    True exactly once per issued, unexpired nonce. Never-issued, reused and expired
    nonces all return False.
    """
    if not nonce:
        return False
    return kv.pop(_state_key(nonce)) is not None
