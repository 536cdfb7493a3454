"""Chat-mediated Anthropic OAuth login (PKCE) and credential storage.

Flow:
1. A user sends ``/login`` in a channel.
2. ``OAuthFlow.start_login`` creates a verifier/challenge pair for that
   channel and returns the authorization URL, which is posted back.
3. The user authorizes in the browser and pastes ``code#state`` into the
   channel.
4. ``OAuthFlow.complete_login`` exchanges it at the token endpoint and saves
   the credential to ``<working_dir>/.huddle/oauth.json``.

Credentials belong to the working directory; pending logins belong to a
channel and expire after ten minutes.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import os
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from huddle import log

CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
AUTHORIZE_URL = "https://claude.ai/oauth/authorize"
TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
REDIRECT_URI = "https://console.anthropic.com/oauth/code/callback"
SCOPES = "org:create_api_key user:profile user:inference"

PROVIDER = "anthropic"
AUTH_TIMEOUT_S = 10 * 60
# subtracted from the provider's stated token lifetime
EXPIRY_BUFFER_MS = 5 * 60 * 1000

CREDENTIALS_DIRNAME = ".huddle"
CREDENTIALS_FILENAME = "oauth.json"


# ============================================================================
# Results and errors
# ============================================================================


class LoginError(Exception):
    """A pending login ended without a token exchange."""


class LoginCancelledError(LoginError):
    pass


class LoginTimeoutError(LoginError):
    pass


@dataclass(frozen=True)
class LoginResult:
    success: bool
    error: str | None = None


@dataclass
class OAuthCredentials:
    refresh: str
    access: str
    expires: int  # epoch ms, buffer already subtracted
    type: str = "oauth"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "refresh": self.refresh,
            "access": self.access,
            "expires": self.expires,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OAuthCredentials:
        return cls(
            refresh=str(data["refresh"]),
            access=str(data["access"]),
            expires=int(data["expires"]),
            type=str(data.get("type") or "oauth"),
        )


@dataclass(frozen=True)
class ResolvedCredential:
    """What a run authenticates with: an OAuth bearer token or an API key."""

    kind: str  # "oauth" | "api_key"
    value: str
    source: str  # "login" | "env"


# ============================================================================
# Credential file
# ============================================================================


class CredentialStore:
    """``<working_dir>/.huddle/oauth.json``: ``{"anthropic": {type, refresh, access, expires}}``."""

    def __init__(self, working_dir: str) -> None:
        self._dir = os.path.join(working_dir, CREDENTIALS_DIRNAME)
        self._path = os.path.join(self._dir, CREDENTIALS_FILENAME)

    @property
    def path(self) -> str:
        return self._path

    def load(self) -> OAuthCredentials | None:
        if not os.path.exists(self._path):
            return None
        try:
            with open(self._path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
            entry = data.get(PROVIDER) if isinstance(data, dict) else None
            return OAuthCredentials.from_dict(entry) if entry else None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log.log_warning("Failed to load OAuth credentials", str(exc))
            return None

    def save(self, credentials: OAuthCredentials) -> None:
        self._write(json.dumps({PROVIDER: credentials.to_dict()}, indent=2))

    def remove(self) -> None:
        """Log out by overwriting the file with an empty record."""
        if os.path.exists(self._path):
            self._write("{}")

    def is_logged_in(self) -> bool:
        return self.load() is not None

    def _write(self, content: str) -> None:
        os.makedirs(self._dir, mode=0o700, exist_ok=True)
        tmp = self._path + ".tmp"
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        os.chmod(tmp, 0o600)
        os.replace(tmp, self._path)


# ============================================================================
# PKCE
# ============================================================================


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_pkce() -> tuple[str, str]:
    """Return ``(verifier, challenge)``; the challenge is the S256 of the verifier."""
    verifier = _b64url(secrets.token_bytes(32))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return verifier, challenge


def build_authorize_url(verifier: str, challenge: str) -> str:
    params = {
        "code": "true",
        "client_id": CLIENT_ID,
        "response_type": "code",
        "redirect_uri": REDIRECT_URI,
        "scope": SCOPES,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "state": verifier,
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


# ============================================================================
# Pending logins
# ============================================================================


@dataclass
class PendingAuth:
    verifier: str
    challenge: str
    created_at: float  # seconds, from the flow's clock
    waiter: asyncio.Future[LoginResult] | None = None
    timer: asyncio.TimerHandle | None = None


class OAuthFlow:
    """Pending PKCE logins keyed by channel, plus token exchange and refresh.

    Expiry is checked against ``created_at`` on every access. The timer armed
    by ``start_login`` only rejects the waiter promptly; correctness never
    depends on it firing.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        clock: Callable[[], float] = time.time,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_s: float = AUTH_TIMEOUT_S,
    ) -> None:
        self._credentials = credentials
        self._clock = clock
        self._transport = transport
        self._timeout_s = timeout_s
        self._pending: dict[str, PendingAuth] = {}

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _is_expired(self, pending: PendingAuth) -> bool:
        return self._clock() - pending.created_at > self._timeout_s

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=30.0)

    # ── Pending state ────────────────────────────────────────────────

    def _take(self, channel_id: str, pending: PendingAuth | None) -> PendingAuth | None:
        """Remove the channel's entry, but only if it is still *pending* (when given)."""
        current = self._pending.get(channel_id)
        if current is None or (pending is not None and current is not pending):
            return None
        del self._pending[channel_id]
        if current.timer is not None:
            current.timer.cancel()
        return current

    def _discard(
        self, channel_id: str, error: LoginError, pending: PendingAuth | None = None
    ) -> None:
        taken = self._take(channel_id, pending)
        if taken is not None and taken.waiter is not None and not taken.waiter.done():
            taken.waiter.set_exception(error)

    def _finish(self, channel_id: str, pending: PendingAuth, result: LoginResult) -> None:
        # a /login sent during the exchange owns the channel now
        taken = self._take(channel_id, pending)
        if taken is not None and taken.waiter is not None and not taken.waiter.done():
            taken.waiter.set_result(result)

    def _on_timer(self, channel_id: str, pending: PendingAuth) -> None:
        self._discard(channel_id, LoginTimeoutError("Login timed out after 10 minutes"), pending)

    def start_login(self, channel_id: str) -> str:
        """Begin a login for *channel_id* and return the authorization URL.

        A login already pending for the channel is cancelled first.
        """
        self._discard(channel_id, LoginCancelledError("Login cancelled - new login started"))
        for other in [c for c, p in self._pending.items() if self._is_expired(p)]:
            self._discard(other, LoginTimeoutError("Login timed out after 10 minutes"))

        verifier, challenge = generate_pkce()
        pending = PendingAuth(verifier=verifier, challenge=challenge, created_at=self._clock())
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            pending.waiter = loop.create_future()
            pending.timer = loop.call_later(self._timeout_s, self._on_timer, channel_id, pending)
        self._pending[channel_id] = pending

        log.log_login_started(channel_id)
        return build_authorize_url(verifier, challenge)

    def get_pending(self, channel_id: str) -> PendingAuth | None:
        pending = self._pending.get(channel_id)
        if pending is None:
            return None
        if self._is_expired(pending):
            self._discard(channel_id, LoginTimeoutError("Login timed out after 10 minutes"), pending)
            return None
        return pending

    def has_pending(self, channel_id: str) -> bool:
        return self.get_pending(channel_id) is not None

    def pending_count(self) -> int:
        return len(self._pending)

    def waiter(self, channel_id: str) -> asyncio.Future[LoginResult] | None:
        pending = self._pending.get(channel_id)
        return pending.waiter if pending else None

    def is_auth_response(self, channel_id: str, text: str) -> bool:
        """True if *text* looks like a pasted ``code#state`` for a pending login."""
        text = text.strip()
        if "#" not in text or text.startswith("/"):
            return False
        return self.has_pending(channel_id)

    def cancel(self, channel_id: str) -> None:
        self._discard(channel_id, LoginCancelledError("Login cancelled"))

    # ── Token endpoint ───────────────────────────────────────────────

    def _credentials_from(self, data: dict[str, Any]) -> OAuthCredentials:
        return OAuthCredentials(
            refresh=str(data["refresh_token"]),
            access=str(data["access_token"]),
            expires=self._now_ms() + int(data["expires_in"]) * 1000 - EXPIRY_BUFFER_MS,
        )

    async def complete_login(self, channel_id: str, auth_code: str) -> LoginResult:
        """Exchange a pasted ``code#state`` for tokens and store them.

        Every failure drops the pending entry and leaves stored credentials
        as they were.
        """
        pending = self._pending.get(channel_id)
        if pending is None:
            return LoginResult(False, "No pending login. Use /login to start.")
        if self._is_expired(pending):
            self._discard(channel_id, LoginTimeoutError("Login timed out after 10 minutes"), pending)
            return LoginResult(False, "Login expired. Use /login to start again.")

        code, _, state = auth_code.strip().partition("#")
        body = {
            "grant_type": "authorization_code",
            "client_id": CLIENT_ID,
            "code": code,
            "state": state,
            "redirect_uri": REDIRECT_URI,
            "code_verifier": pending.verifier,
        }

        try:
            async with self._client() as client:
                resp = await client.post(TOKEN_URL, json=body)
            if not resp.is_success:
                result = LoginResult(False, f"Token exchange failed: {resp.text}")
            else:
                self._credentials.save(self._credentials_from(resp.json()))
                result = LoginResult(True)
        except Exception as exc:
            result = LoginResult(False, f"Login failed: {exc}")

        self._finish(channel_id, pending, result)
        log.log_login_result(channel_id, result.success, result.error)
        return result

    async def refresh(self) -> str | None:
        """Re-exchange the stored refresh token; None if that is not possible."""
        current = self._credentials.load()
        if current is None:
            return None

        body = {
            "grant_type": "refresh_token",
            "client_id": CLIENT_ID,
            "refresh_token": current.refresh,
        }
        try:
            async with self._client() as client:
                resp = await client.post(TOKEN_URL, json=body)
            if not resp.is_success:
                log.log_warning("Token refresh failed", resp.text)
                return None
            fresh = self._credentials_from(resp.json())
        except Exception as exc:
            log.log_warning("Token refresh error", str(exc))
            return None

        self._credentials.save(fresh)
        return fresh.access

    async def get_access_token(self) -> str | None:
        """The stored access token, refreshed first if it has expired."""
        current = self._credentials.load()
        if current is None:
            return None
        if self._now_ms() >= current.expires:
            return await self.refresh()
        return current.access

    def logout(self) -> None:
        self._credentials.remove()


async def resolve_credential(flow: OAuthFlow) -> ResolvedCredential | None:
    """Pick the credential for a run: stored login first, then the environment."""
    token = await flow.get_access_token()
    if token:
        return ResolvedCredential(kind="oauth", value=token, source="login")

    env_oauth = os.environ.get("ANTHROPIC_OAUTH_TOKEN")
    if env_oauth:
        return ResolvedCredential(kind="oauth", value=env_oauth, source="env")
    env_key = os.environ.get("ANTHROPIC_API_KEY")
    if env_key:
        return ResolvedCredential(kind="api_key", value=env_key, source="env")
    return None
