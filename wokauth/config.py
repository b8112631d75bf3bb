"""
Auth service configuration. Values from the environment; no secrets in this file.
Provider credentials, signing secret and storage addresses come from env.
"""
import logging
import os
import secrets

logger = logging.getLogger(__name__)

# Relational store (users, oauth_accounts). SQLite acceptable for development.
DATABASE_URL = os.environ.get("AUTH_DATABASE_URL", "sqlite:///./wokauth.db")

# Key-value store for OAuth state nonces. Empty = in-process memory store.
REDIS_URL = os.environ.get("REDIS_URL", "").strip() or None

# HMAC secret for session tokens. If unset, a per-process secret is generated
# (sessions then do not survive a restart).
_jwt_secret = os.environ.get("JWT_SECRET", "")
if not _jwt_secret:
    logger.warning("JWT_SECRET not set; generating an ephemeral signing secret")
    _jwt_secret = secrets.token_hex(32)
JWT_SECRET: bytes = _jwt_secret.encode("utf-8")

# Provider OAuth apps
GITHUB_CLIENT_ID = os.environ.get("GITHUB_CLIENT_ID", "")
GITHUB_CLIENT_SECRET = os.environ.get("GITHUB_CLIENT_SECRET", "")
GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET", "")
DISCORD_CLIENT_ID = os.environ.get("DISCORD_CLIENT_ID", "")
DISCORD_CLIENT_SECRET = os.environ.get("DISCORD_CLIENT_SECRET", "")

# Callback URLs are <AUTH_REDIRECT_BASE>/<provider>/callback
AUTH_REDIRECT_BASE = os.environ.get("AUTH_REDIRECT_BASE", "https://api.wokspec.org/v1/auth").rstrip("/")

# Where the browser lands after a successful login
POST_LOGIN_REDIRECT = os.environ.get("POST_LOGIN_REDIRECT", "https://wokspec.org/account")

# Session cookie
COOKIE_NAME = "wokspec_session"
SESSION_TTL_SECONDS = 60 * 60 * 24 * 7  # 7 days

# OAuth state nonce lifetime (seconds)
STATE_TTL_SECONDS = 600

# Timeout for token exchange and profile fetch calls (seconds)
PROVIDER_HTTP_TIMEOUT = float(os.environ.get("AUTH_PROVIDER_HTTP_TIMEOUT", "10.0"))

# Rate limiting: per-IP, per minute. 0 disables.
RATE_LIMIT_LOGIN_PER_MINUTE = int(os.environ.get("AUTH_RATE_LIMIT_LOGIN_PER_MINUTE", "30"))
RATE_LIMIT_CALLBACK_PER_MINUTE = int(os.environ.get("AUTH_RATE_LIMIT_CALLBACK_PER_MINUTE", "30"))
