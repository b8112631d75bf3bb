"""Tests for the OAuth login flow, /auth/me and /auth/logout."""
import re
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from wokauth import config, routes
from wokauth.kv_store import MemoryKeyValueStore, get_kv_store
from wokauth.main import app
from wokauth.models import AuditLog, OAuthAccount, User
from wokauth.providers import build_providers
from wokauth.routes import get_providers
from wokauth.tokens import mint_session, verify


class Upstream:
    """Fake GitHub / Google / Discord APIs. Records every request it receives."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_body = {"access_token": "provider-at"}
        self.github_user = {
            "id": 1001,
            "login": "octocat",
            "name": "Octo Cat",
            "avatar_url": "https://avatars.example/1001",
            "email": "octo@example.com",
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host, path = request.url.host, request.url.path
        if request.method == "POST":
            return httpx.Response(200, json=self.token_body)
        if host == "api.github.com" and path == "/user":
            return httpx.Response(200, json=self.github_user)
        if host == "api.github.com" and path == "/user/emails":
            return httpx.Response(200, json=[])
        if host == "www.googleapis.com":
            return httpx.Response(200, json={"id": "g-1", "email": "g@example.com", "name": "G", "picture": "https://p"})
        if host == "discord.com":
            return httpx.Response(
                200, json={"id": "d-1", "username": "disc", "global_name": "Disc", "email": None, "avatar": "abc"}
            )
        return httpx.Response(404)


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def client(db, upstream, kv):
    providers = build_providers(http=httpx.Client(transport=httpx.MockTransport(upstream)))
    app.dependency_overrides[get_providers] = lambda: providers
    app.dependency_overrides[get_kv_store] = lambda: kv
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _session_cookie(response: httpx.Response) -> str:
    set_cookie = response.headers.get("set-cookie", "")
    match = re.search(r"wokspec_session=([^;]*)", set_cookie)
    assert match, set_cookie
    return match.group(1)


def _start(client: TestClient, provider: str) -> str:
    r = client.get(f"/auth/{provider}", follow_redirects=False)
    assert r.status_code == 302
    return parse_qs(urlparse(r.headers["location"]).query)["state"][0]


def _login(client: TestClient, provider: str = "github") -> httpx.Response:
    state = _start(client, provider)
    return client.get(
        f"/auth/{provider}/callback", params={"code": "auth-code", "state": state}, follow_redirects=False
    )


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("service") == "wokauth"


# --- GET /auth/{provider} ---


@pytest.mark.parametrize(
    "provider,authorize",
    [
        ("github", "https://github.com/login/oauth/authorize?"),
        ("google", "https://accounts.google.com/o/oauth2/v2/auth?"),
        ("discord", "https://discord.com/api/oauth2/authorize?"),
    ],
)
def test_start_login_redirects_with_stored_state(client, kv, provider, authorize):
    r = client.get(f"/auth/{provider}", follow_redirects=False)
    assert r.status_code == 302
    location = r.headers["location"]
    assert location.startswith(authorize)
    q = parse_qs(urlparse(location).query)
    state = q["state"][0]
    assert re.match(r"^[0-9a-f]{32}$", state)
    assert q["redirect_uri"][0] == f"{config.AUTH_REDIRECT_BASE}/{provider}/callback"
    assert kv.get(f"oauth_state:{state}") is not None


def test_start_login_unknown_provider(client, upstream):
    r = client.get("/auth/myspace", follow_redirects=False)
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "UNKNOWN_PROVIDER"


# --- GET /auth/{provider}/callback ---


@pytest.mark.parametrize("params", [{}, {"code": "c"}, {"state": "s"}, {"code": "", "state": "s"}])
def test_callback_missing_code_or_state(client, upstream, params):
    r = client.get("/auth/github/callback", params=params, follow_redirects=False)
    assert r.status_code == 400
    body = r.json()
    assert body["data"] is None
    assert body["error"] == {"code": "MISSING_PARAMS", "message": "Missing code or state", "status": 400}
    assert upstream.requests == []


def test_callback_unknown_state_makes_no_upstream_call(client, upstream):
    r = client.get("/auth/github/callback", params={"code": "c", "state": "f" * 32}, follow_redirects=False)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INVALID_STATE"
    assert r.json()["error"]["message"] == "Invalid state"
    assert upstream.requests == []
    assert "set-cookie" not in r.headers


def test_callback_state_cannot_be_replayed(client, upstream):
    state = _start(client, "github")
    first = client.get("/auth/github/callback", params={"code": "c", "state": state}, follow_redirects=False)
    assert first.status_code == 302
    calls = len(upstream.requests)

    second = client.get("/auth/github/callback", params={"code": "c", "state": state}, follow_redirects=False)
    assert second.status_code == 400
    assert second.json()["error"]["code"] == "INVALID_STATE"
    assert len(upstream.requests) == calls


def test_callback_expired_state(client, upstream, kv):
    state = _start(client, "github")
    kv.delete(f"oauth_state:{state}")
    r = client.get("/auth/github/callback", params={"code": "c", "state": state}, follow_redirects=False)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INVALID_STATE"


def test_callback_token_exchange_failure(client, upstream, db):
    upstream.token_body = {"error": "bad_verification_code"}
    r = _login(client)
    assert r.status_code == 400
    error = r.json()["error"]
    assert error["code"] == "TOKEN_EXCHANGE_FAILED"
    assert error["message"] == "Token exchange failed"
    assert "bad_verification_code" in error["detail"]
    assert "secret" not in r.text
    assert db.query(User).count() == 0
    # exchange failed, so the profile endpoint was never called
    assert [req.method for req in upstream.requests] == ["POST"]


def test_callback_profile_failure(client, upstream, db):
    upstream.github_user = {"login": "no-id"}
    r = _login(client)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "PROFILE_FETCH_FAILED"
    assert db.query(User).count() == 0


def test_callback_success_sets_session_cookie(client, db):
    r = _login(client)
    assert r.status_code == 302
    assert r.headers["location"] == config.POST_LOGIN_REDIRECT

    set_cookie = r.headers["set-cookie"]
    assert "HttpOnly" in set_cookie
    assert "Secure" in set_cookie
    assert "samesite=lax" in set_cookie.lower()
    assert "Path=/" in set_cookie
    assert "Max-Age=604800" in set_cookie

    payload = verify(_session_cookie(r), config.JWT_SECRET)
    user = db.query(User).one()
    assert payload["sub"] == user.id
    assert user.email == "octo@example.com"
    assert user.username == "octocat"
    account = db.query(OAuthAccount).one()
    assert (account.provider, account.provider_user_id, account.access_token) == ("github", "1001", "provider-at")


@pytest.mark.parametrize("provider", ["github", "google", "discord"])
def test_each_provider_completes_flow(client, db, provider):
    r = _login(client, provider)
    assert r.status_code == 302
    assert db.query(OAuthAccount).one().provider == provider


def test_repeat_login_reuses_user(client, upstream, db):
    first = verify(_session_cookie(_login(client)), config.JWT_SECRET)["sub"]
    upstream.github_user = dict(upstream.github_user, email=None, name="Renamed")
    second = verify(_session_cookie(_login(client)), config.JWT_SECRET)["sub"]
    assert first == second
    assert db.query(User).count() == 1
    assert db.query(OAuthAccount).count() == 1
    db.expire_all()
    user = db.get(User, first)
    assert user.email == "octo@example.com"
    assert user.display_name == "Renamed"


def test_login_attempts_are_audited(client, db):
    client.get("/auth/github/callback", params={"code": "c", "state": "nope"}, follow_redirects=False)
    _login(client)
    events = [(a.event_type, a.provider, a.outcome) for a in db.query(AuditLog).order_by(AuditLog.id)]
    assert events == [("login_fail", "github", "fail"), ("login_ok", "github", "success")]


# --- /auth/me and /auth/logout ---


def test_me_after_login(client):
    token = _session_cookie(_login(client))
    r = client.get("/auth/me", headers={"Cookie": f"wokspec_session={token}"})
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["user"]["username"] == "octocat"
    assert set(body["user"]) == {"id", "email", "username", "display_name", "avatar_url"}


def test_me_without_cookie(client):
    r = client.get("/auth/me")
    assert r.status_code == 401
    assert r.json()["error"] == {"code": "UNAUTHORIZED", "message": "Not authenticated", "status": 401}


def test_me_with_wrongly_signed_token(client):
    _login(client)
    token = mint_session("0123456789abcdef0123456789abcdef", b"not-the-server-secret-0123456789ab")
    r = client.get("/auth/me", headers={"Cookie": f"wokspec_session={token}"})
    assert r.status_code == 401
    assert r.json()["error"]["message"] == "Invalid session"


def test_me_with_deleted_user(client, db):
    token = _session_cookie(_login(client))
    db.delete(db.query(User).one())
    db.commit()
    r = client.get("/auth/me", headers={"Cookie": f"wokspec_session={token}"})
    assert r.status_code == 401
    assert r.json()["error"]["message"] == "Invalid session"


def test_logout_clears_cookie(client, db):
    token = _session_cookie(_login(client))
    r = client.post("/auth/logout", headers={"Cookie": f"wokspec_session={token}"})
    assert r.status_code == 200
    assert r.json() == {"ok": True}
    set_cookie = r.headers["set-cookie"]
    assert "wokspec_session=" in set_cookie
    assert "Max-Age=0" in set_cookie
    assert db.query(AuditLog).filter(AuditLog.event_type == "logout").count() == 1


def test_logout_without_session(client):
    r = client.post("/auth/logout")
    assert r.status_code == 200
    assert "Max-Age=0" in r.headers["set-cookie"]


# --- rate limiting ---


def test_start_login_rate_limited(client, monkeypatch):
    monkeypatch.setattr(config, "RATE_LIMIT_LOGIN_PER_MINUTE", 2)
    assert client.get("/auth/github", follow_redirects=False).status_code == 302
    assert client.get("/auth/google", follow_redirects=False).status_code == 302
    r = client.get("/auth/github", follow_redirects=False)
    assert r.status_code == 429
    assert r.json()["error"]["code"] == "RATE_LIMITED"
    assert int(r.headers["retry-after"]) >= 1


# --- storage failures ---


def test_callback_storage_error_returns_error_envelope(client, monkeypatch):
    def failing_upsert(*args, **kwargs):
        raise OperationalError("INSERT INTO users", {}, Exception("database is locked"))

    monkeypatch.setattr(routes, "upsert_user", failing_upsert)
    r = _login(client)
    assert r.status_code == 500
    assert r.headers["content-type"].startswith("application/json")
    assert r.json() == {
        "data": None,
        "error": {"code": "INTERNAL_ERROR", "message": "Internal error", "status": 500},
    }
    assert "locked" not in r.text
    assert "set-cookie" not in r.headers


def test_me_storage_error_returns_error_envelope(client, db, monkeypatch):
    token = _session_cookie(_login(client))

    def failing_get(self, *args, **kwargs):
        raise OperationalError("SELECT users", {}, Exception("no such table"))

    monkeypatch.setattr(Session, "get", failing_get)
    r = client.get("/auth/me", headers={"Cookie": f"wokspec_session={token}"})
    assert r.status_code == 500
    assert r.json()["error"]["code"] == "INTERNAL_ERROR"


# --- provider registry lifecycle ---


def test_close_providers_closes_http_client(monkeypatch):
    http = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    monkeypatch.setattr(routes, "_providers", build_providers(http=http))
    routes.close_providers()
    assert http.is_closed
    assert routes._providers is None
    routes.close_providers()
