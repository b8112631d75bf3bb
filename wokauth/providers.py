"""
OAuth provider adapters (GitHub, Google, Discord).
Each adapter builds the authorize URL, exchanges an authorization code for an access
token, and fetches + normalizes the user profile. The flow controller only sees
the OAuthProvider interface.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping
from urllib.parse import urlencode

import httpx

from wokauth import config
from wokauth.identity import ProviderProfile

logger = logging.getLogger(__name__)

USER_AGENT = "WokAPI/1.0"

# Upstream error text returned to clients is cut to this length
DETAIL_MAX_CHARS = 120


class ProviderError(Exception):
    """Token exchange or profile fetch failed. detail is short and safe to show."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail[:DETAIL_MAX_CHARS]


@dataclass(frozen=True)
class ProviderCredentials:
    client_id: str
    client_secret: str
    redirect_uri: str


def _json_or_error(response: httpx.Response, what: str) -> Any:
    if response.status_code >= 400:
        detail = f"{what}: HTTP {response.status_code}"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), str):
            detail = f"{what}: {body['error']}"
        raise ProviderError(detail)
    try:
        return response.json()
    except ValueError:
        raise ProviderError(f"{what}: invalid JSON response")


class OAuthProvider(ABC):
    """One external identity provider. Stateless apart from its credentials and HTTP client."""

    name: str
    authorize_endpoint: str
    token_endpoint: str
    scope: str

    def __init__(self, credentials: ProviderCredentials, http: httpx.Client):
        self.credentials = credentials
        self.http = http

    def authorize_params(self, state: str) -> dict[str, str]:
        return {
            "client_id": self.credentials.client_id,
            "redirect_uri": self.credentials.redirect_uri,
            "scope": self.scope,
            "response_type": "code",
            "state": state,
        }

    def build_authorize_url(self, state: str) -> str:
        """Provider authorize URL carrying the state nonce."""
        return f"{self.authorize_endpoint}?{urlencode(self.authorize_params(state))}"

    def exchange_code(self, code: str) -> str:
        """Exchange an authorization code for an access token. Raises ProviderError."""
        try:
            response = self._token_request(code)
        except httpx.HTTPError as e:
            raise ProviderError(f"token request failed: {type(e).__name__}")
        data = _json_or_error(response, "token endpoint")
        if not isinstance(data, dict):
            raise ProviderError("token endpoint: unexpected response")
        access_token = data.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise ProviderError(f"token endpoint: {data.get('error') or 'no access_token'}")
        return access_token

    def fetch_profile(self, access_token: str) -> tuple[str, ProviderProfile]:
        """Return (provider_user_id, normalized profile). Raises ProviderError."""
        try:
            return self._fetch_profile(access_token)
        except httpx.HTTPError as e:
            raise ProviderError(f"profile request failed: {type(e).__name__}")

    def _form_token_request(self, code: str) -> httpx.Response:
        return self.http.post(
            self.token_endpoint,
            data={
                "code": code,
                "client_id": self.credentials.client_id,
                "client_secret": self.credentials.client_secret,
                "redirect_uri": self.credentials.redirect_uri,
                "grant_type": "authorization_code",
            },
            headers={"Accept": "application/json"},
        )

    def _get_json(self, url: str, access_token: str, what: str) -> Any:
        response = self.http.get(
            url,
            headers={"Authorization": f"Bearer {access_token}", "User-Agent": USER_AGENT},
        )
        return _json_or_error(response, what)

    @abstractmethod
    def _token_request(self, code: str) -> httpx.Response: ...

    @abstractmethod
    def _fetch_profile(self, access_token: str) -> tuple[str, ProviderProfile]: ...


def _require_id(data: Any, what: str) -> str:
    if not isinstance(data, dict) or data.get("id") in (None, ""):
        raise ProviderError(f"{what}: missing user id")
    return str(data["id"])


class GitHubProvider(OAuthProvider):
    name = "github"
    authorize_endpoint = "https://github.com/login/oauth/authorize"
    token_endpoint = "https://github.com/login/oauth/access_token"
    user_endpoint = "https://api.github.com/user"
    emails_endpoint = "https://api.github.com/user/emails"
    scope = "user:email"

    def authorize_params(self, state: str) -> dict[str, str]:
        params = super().authorize_params(state)
        # GitHub does not take response_type
        params.pop("response_type")
        return params

    def _token_request(self, code: str) -> httpx.Response:
        # GitHub accepts a JSON body; Accept header makes it answer in JSON too
        return self.http.post(
            self.token_endpoint,
            json={
                "client_id": self.credentials.client_id,
                "client_secret": self.credentials.client_secret,
                "code": code,
                "redirect_uri": self.credentials.redirect_uri,
            },
            headers={"Accept": "application/json"},
        )

    def _primary_email(self, access_token: str) -> str | None:
        """Primary verified address from /user/emails, else the first listed."""
        try:
            emails = self._get_json(self.emails_endpoint, access_token, "github emails")
        except ProviderError as e:
            logger.warning("GitHub email lookup failed: %s", e.detail)
            return None
        except httpx.HTTPError as e:
            logger.warning("GitHub email lookup failed: %s", type(e).__name__)
            return None
        if not isinstance(emails, list) or not emails:
            return None
        for entry in emails:
            if isinstance(entry, dict) and entry.get("primary") and entry.get("verified"):
                return entry.get("email")
        first = emails[0]
        return first.get("email") if isinstance(first, dict) else None

    def _fetch_profile(self, access_token: str) -> tuple[str, ProviderProfile]:
        data = self._get_json(self.user_endpoint, access_token, "github user")
        provider_user_id = _require_id(data, "github user")
        email = data.get("email") or self._primary_email(access_token)
        return provider_user_id, ProviderProfile(
            email=email,
            username=data.get("login"),
            display_name=data.get("name"),
            avatar_url=data.get("avatar_url"),
        )


class GoogleProvider(OAuthProvider):
    name = "google"
    authorize_endpoint = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint = "https://oauth2.googleapis.com/token"
    userinfo_endpoint = "https://www.googleapis.com/oauth2/v2/userinfo"
    scope = "openid email profile"

    def _token_request(self, code: str) -> httpx.Response:
        return self._form_token_request(code)

    def _fetch_profile(self, access_token: str) -> tuple[str, ProviderProfile]:
        data = self._get_json(self.userinfo_endpoint, access_token, "google userinfo")
        provider_user_id = _require_id(data, "google userinfo")
        return provider_user_id, ProviderProfile(
            email=data.get("email"),
            username=None,
            display_name=data.get("name"),
            avatar_url=data.get("picture"),
        )


class DiscordProvider(OAuthProvider):
    name = "discord"
    authorize_endpoint = "https://discord.com/api/oauth2/authorize"
    token_endpoint = "https://discord.com/api/oauth2/token"
    user_endpoint = "https://discord.com/api/users/@me"
    avatar_template = "https://cdn.discordapp.com/avatars/{user_id}/{avatar}.png"
    scope = "identify email"

    def _token_request(self, code: str) -> httpx.Response:
        return self._form_token_request(code)

    def _fetch_profile(self, access_token: str) -> tuple[str, ProviderProfile]:
        data = self._get_json(self.user_endpoint, access_token, "discord user")
        provider_user_id = _require_id(data, "discord user")
        avatar = data.get("avatar")
        avatar_url = self.avatar_template.format(user_id=provider_user_id, avatar=avatar) if avatar else None
        return provider_user_id, ProviderProfile(
            email=data.get("email"),
            username=data.get("username"),
            display_name=data.get("global_name"),
            avatar_url=avatar_url,
        )


def redirect_uri_for(provider_name: str, redirect_base: str = config.AUTH_REDIRECT_BASE) -> str:
    return f"{redirect_base.rstrip('/')}/{provider_name}/callback"


def build_providers(http: httpx.Client | None = None) -> Mapping[str, OAuthProvider]:
    """Read-only registry of the three providers, built once at startup from config."""
    if http is None:
        http = httpx.Client(timeout=config.PROVIDER_HTTP_TIMEOUT)
    creds = {
        "github": (config.GITHUB_CLIENT_ID, config.GITHUB_CLIENT_SECRET),
        "google": (config.GOOGLE_CLIENT_ID, config.GOOGLE_CLIENT_SECRET),
        "discord": (config.DISCORD_CLIENT_ID, config.DISCORD_CLIENT_SECRET),
    }
    providers: dict[str, OAuthProvider] = {}
    for cls in (GitHubProvider, GoogleProvider, DiscordProvider):
        client_id, client_secret = creds[cls.name]
        if not client_id:
            logger.warning("%s client id not configured; logins via %s will fail", cls.name, cls.name)
        providers[cls.name] = cls(
            ProviderCredentials(
                client_id=client_id,
                client_secret=client_secret,
                redirect_uri=redirect_uri_for(cls.name),
            ),
            http,
        )
    return MappingProxyType(providers)
