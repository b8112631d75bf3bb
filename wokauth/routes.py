"""
OAuth login flow and session routes.
GET /auth/{provider} -> provider authorize URL; GET /auth/{provider}/callback -> exchange
code, fetch profile, upsert user, set session cookie. GET /auth/me, POST /auth/logout.
"""
import logging
from typing import Annotated, Mapping

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from wokauth import config
from wokauth.audit import (
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    EVENT_LOGOUT,
    OUTCOME_FAIL,
    get_client_ip,
    log_audit,
)
from wokauth.database import get_db
from wokauth.errors import (
    INVALID_STATE,
    MISSING_PARAMS,
    PROFILE_FETCH_FAILED,
    TOKEN_EXCHANGE_FAILED,
    UNKNOWN_PROVIDER,
    ApiError,
)
from wokauth.identity import upsert_user
from wokauth.kv_store import KeyValueStore, get_kv_store
from wokauth.providers import OAuthProvider, ProviderError, build_providers
from wokauth.rate_limit import rate_limit
from wokauth.session import (
    CurrentUser,
    authenticate,
    clear_session_cookie_kwargs,
    extract_session_token,
    get_signing_secret,
    session_cookie_kwargs,
)
from wokauth.state_store import consume_state, issue_state
from wokauth.tokens import mint_session

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth")

_providers: Mapping[str, OAuthProvider] | None = None


def get_providers() -> Mapping[str, OAuthProvider]:
    """Dependency: provider registry, built from config on first use."""
    global _providers
    if _providers is None:
        _providers = build_providers()
    return _providers


def close_providers() -> None:
    """Close the registry's HTTP client(s) and forget the registry."""
    global _providers
    if _providers is None:
        return
    for http in {id(p.http): p.http for p in _providers.values()}.values():
        http.close()
    _providers = None


Providers = Annotated[Mapping[str, OAuthProvider], Depends(get_providers)]
KV = Annotated[KeyValueStore, Depends(get_kv_store)]
DB = Annotated[Session, Depends(get_db)]
Secret = Annotated[bytes, Depends(get_signing_secret)]


def _get_provider(providers: Mapping[str, OAuthProvider], name: str) -> OAuthProvider:
    adapter = providers.get(name)
    if adapter is None:
        raise ApiError(UNKNOWN_PROVIDER, "Unknown provider", 404)
    return adapter


def _reject(db: Session, request: Request, provider: str, error: ApiError) -> ApiError:
    """Record a failed login and return the error to raise."""
    logger.warning("OAuth callback rejected for %s: %s", provider, error.code)
    log_audit(db, EVENT_LOGIN_FAIL, provider=provider, ip=get_client_ip(request), outcome=OUTCOME_FAIL)
    return error


@router.get("/me")
def me(user: CurrentUser):
    """Current user for a valid session cookie; 401 otherwise."""
    return {"ok": True, "user": user.to_public()}


@router.post("/logout")
def logout(request: Request, db: DB, secret: Secret):
    """Clear the session cookie. Tokens are stateless, so nothing is revoked server-side."""
    user = authenticate(db, extract_session_token(request), secret)
    if user is not None:
        log_audit(db, EVENT_LOGOUT, user_id=user.id, ip=get_client_ip(request))
    response = JSONResponse({"ok": True})
    response.set_cookie(**clear_session_cookie_kwargs())
    return response


@router.get(
    "/{provider}",
    dependencies=[Depends(rate_limit("login", "RATE_LIMIT_LOGIN_PER_MINUTE"))],
)
def start_login(provider: str, providers: Providers, kv: KV):
    """Issue a state nonce and redirect to the provider's authorize URL."""
    adapter = _get_provider(providers, provider)
    state = issue_state(kv)
    return RedirectResponse(url=adapter.build_authorize_url(state), status_code=302)


@router.get(
    "/{provider}/callback",
    dependencies=[Depends(rate_limit("callback", "RATE_LIMIT_CALLBACK_PER_MINUTE"))],
)
def callback(
    provider: str,
    request: Request,
    providers: Providers,
    kv: KV,
    db: DB,
    secret: Secret,
    code: str | None = None,
    state: str | None = None,
):
    """
    Complete the authorization-code flow. Each failed step is terminal; the client has to
    start again from /auth/{provider}.
    """
    adapter = _get_provider(providers, provider)

    if not code or not state:
        raise _reject(db, request, provider, ApiError(MISSING_PARAMS, "Missing code or state"))
    if not consume_state(kv, state):
        raise _reject(db, request, provider, ApiError(INVALID_STATE, "Invalid state"))

    try:
        access_token = adapter.exchange_code(code)
    except ProviderError as e:
        raise _reject(
            db, request, provider, ApiError(TOKEN_EXCHANGE_FAILED, "Token exchange failed", detail=e.detail)
        )

    try:
        provider_user_id, profile = adapter.fetch_profile(access_token)
    except ProviderError as e:
        raise _reject(
            db, request, provider, ApiError(PROFILE_FETCH_FAILED, "Profile fetch failed", detail=e.detail)
        )

    user_id = upsert_user(db, provider, provider_user_id, profile, access_token)
    token = mint_session(user_id, secret)
    log_audit(db, EVENT_LOGIN_OK, provider=provider, user_id=user_id, ip=get_client_ip(request))
    logger.info("User %s signed in with %s", user_id, provider)

    response = RedirectResponse(url=config.POST_LOGIN_REDIRECT, status_code=302)
    response.set_cookie(**session_cookie_kwargs(token))
    return response
