"""OAuth token refresh, provider refresh endpoints and the PKCE helper."""

import asyncio
import base64
import hashlib
import inspect
import secrets
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping
from urllib.parse import urlencode

import httpx

from .credentials import Credential, CredentialPool, OAuthCredential
from .exceptions import RefreshFailed
from .logging import get_logger

if TYPE_CHECKING:
    from .stats import StatsCollector

DEFAULT_REFRESH_SKEW_SECONDS = 60.0

ANTHROPIC_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
ANTHROPIC_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
OPENAI_TOKEN_URL = "https://auth.openai.com/oauth/token"
OPENAI_CLIENT_ID = "app_EMoamEEZ73f0CkXaXp7hrann"
QWEN_TOKEN_URL = "https://chat.qwen.ai/api/v1/oauth2/token"
QWEN_CLIENT_ID = "f0304373b74a44d2b584a3fb70ca9e56"

RefreshFunc = Callable[[httpx.AsyncClient, OAuthCredential], Awaitable[OAuthCredential]]
TokenRefreshCallback = Callable[[OAuthCredential], Any]


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        error = data.get("error_description") or data.get("error") or data.get("message")
        if isinstance(error, dict):
            error = error.get("message")
        if error:
            return str(error)
    return response.text[:200]


def _apply_token_response(
    credential: OAuthCredential, response: httpx.Response, provider: str
) -> OAuthCredential:
    """Turn a token endpoint reply into the refreshed credential."""
    if response.status_code != 200:
        raise RefreshFailed(
            f"Token refresh failed: {_error_detail(response)}",
            provider,
            credential.id,
            response.status_code,
        )
    try:
        data = response.json()
    except ValueError as e:
        raise RefreshFailed(
            "Token endpoint returned invalid JSON", provider, credential.id, response.status_code
        ) from e

    if not isinstance(data, dict) or data.get("error"):
        detail = data.get("error_description") or data.get("error") if isinstance(data, dict) else data
        raise RefreshFailed(f"Token refresh rejected: {detail}", provider, credential.id)
    if not data.get("access_token"):
        raise RefreshFailed("Token response is missing access_token", provider, credential.id)

    expires_in = data.get("expires_in")
    return credential.with_token(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_in=float(expires_in) if expires_in else None,
    )


def _require_refresh_token(credential: OAuthCredential, provider: str) -> None:
    if not credential.refresh_token:
        raise RefreshFailed("No refresh token available", provider, credential.id)


async def anthropic_refresh(client: httpx.AsyncClient, credential: OAuthCredential) -> OAuthCredential:
    """Refresh an Anthropic OAuth token (JSON body)."""
    _require_refresh_token(credential, "anthropic")
    response = await client.post(
        ANTHROPIC_TOKEN_URL,
        json={
            "grant_type": "refresh_token",
            "client_id": credential.client_id or ANTHROPIC_CLIENT_ID,
            "refresh_token": credential.refresh_token,
        },
        headers={"Content-Type": "application/json"},
    )
    return _apply_token_response(credential, response, "anthropic")


async def openai_refresh(client: httpx.AsyncClient, credential: OAuthCredential) -> OAuthCredential:
    """Refresh an OpenAI OAuth token (form body)."""
    _require_refresh_token(credential, "openai")
    response = await client.post(
        OPENAI_TOKEN_URL,
        data={
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": credential.client_id or OPENAI_CLIENT_ID,
        },
    )
    return _apply_token_response(credential, response, "openai")


async def qwen_refresh(client: httpx.AsyncClient, credential: OAuthCredential) -> OAuthCredential:
    """Refresh a Qwen OAuth token (form body)."""
    _require_refresh_token(credential, "qwen")
    data = {
        "grant_type": "refresh_token",
        "refresh_token": credential.refresh_token,
        "client_id": credential.client_id or QWEN_CLIENT_ID,
    }
    if credential.client_secret:
        data["client_secret"] = credential.client_secret
    response = await client.post(
        QWEN_TOKEN_URL, data=data, headers={"Accept": "application/json"}
    )
    return _apply_token_response(credential, response, "qwen")


def generic_refresh(token_url: str) -> RefreshFunc:
    """Build a standard RFC 6749 refresh function for ``token_url``."""

    async def refresh(client: httpx.AsyncClient, credential: OAuthCredential) -> OAuthCredential:
        _require_refresh_token(credential, "oauth")
        data = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
        }
        if credential.client_id:
            data["client_id"] = credential.client_id
        if credential.client_secret:
            data["client_secret"] = credential.client_secret
        response = await client.post(
            token_url, data=data, headers={"Accept": "application/json"}
        )
        return _apply_token_response(credential, response, "oauth")

    return refresh


async def no_refresh(client: httpx.AsyncClient, credential: OAuthCredential) -> OAuthCredential:
    raise RefreshFailed("token refresh not configured", credential_id=credential.id)


REFRESH_FUNCTIONS: dict[str, RefreshFunc] = {
    "anthropic": anthropic_refresh,
    "openai": openai_refresh,
    "qwen": qwen_refresh,
}


def get_refresh_func(provider_type: str, token_url: str | None = None) -> RefreshFunc:
    """Pick the refresh function for a provider; ``token_url`` wins when given."""
    if token_url:
        return generic_refresh(token_url)
    return REFRESH_FUNCTIONS.get(provider_type, no_refresh)


def _format_expiry(expires_at: float | None) -> str | None:
    if expires_at is None:
        return None
    return datetime.fromtimestamp(expires_at, tz=timezone.utc).isoformat()


class OAuthRefresher:
    """
    Keep the OAuth credentials of one pool fresh.

    Refreshes for the same credential are single-flight: concurrent callers
    wait on one lock and the ones that arrive after a successful refresh get
    the new token without another round-trip.
    """

    def __init__(
        self,
        pool: CredentialPool,
        refresh_func: RefreshFunc,
        http_client: httpx.AsyncClient,
        on_token_refresh: TokenRefreshCallback | None = None,
        skew: float = DEFAULT_REFRESH_SKEW_SECONDS,
        stats_collector: "StatsCollector | None" = None,
    ) -> None:
        """
        Initialize the refresher.

        Args:
            pool: Pool whose credentials get replaced on refresh
            refresh_func: Provider refresh round-trip
            http_client: Client handed to ``refresh_func``
            on_token_refresh: Persistence callback (sync or async) called with
                every refreshed credential
            skew: Refresh this many seconds before expiry
            stats_collector: Optional stats collector to record refreshes
        """
        self.pool = pool
        self.refresh_func = refresh_func
        self.http_client = http_client
        self.on_token_refresh = on_token_refresh
        self.skew = skew
        self.stats_collector = stats_collector
        self.logger = get_logger()
        self._locks: dict[str, asyncio.Lock] = {}

    def needs_refresh(self, credential: Credential, now: float | None = None) -> bool:
        if not isinstance(credential, OAuthCredential):
            return False
        remaining = credential.expires_in(now)
        return remaining is not None and remaining < self.skew

    async def ensure_valid(self, credential: Credential) -> Credential:
        """Return a version of ``credential`` that is not about to expire.

        Raises:
            RefreshFailed: If the credential needed a refresh and it failed
        """
        if not isinstance(credential, OAuthCredential):
            return credential
        latest = self.pool.get(credential.id) or credential
        if not self.needs_refresh(latest):
            return latest
        return await self._refresh(latest, stale_token=None)

    async def refresh(self, credential: OAuthCredential, stale_token: str | None = None) -> OAuthCredential:
        """Force a refresh, typically after the upstream rejected ``stale_token``."""
        return await self._refresh(credential, stale_token=stale_token or credential.access_token)

    async def _refresh(self, credential: OAuthCredential, stale_token: str | None) -> OAuthCredential:
        lock = self._locks.setdefault(credential.id, asyncio.Lock())
        async with lock:
            latest = self.pool.get(credential.id) or credential
            if stale_token is not None:
                if latest.access_token != stale_token:
                    return latest
            elif not self.needs_refresh(latest):
                return latest

            self.logger.logger.debug(
                f"Provider {self.pool.provider}: refreshing OAuth token {latest.id}"
            )
            try:
                refreshed = await self.refresh_func(self.http_client, latest)
            except RefreshFailed as e:
                self._record_failure(latest, e)
                raise
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
                error = RefreshFailed(
                    f"Token refresh failed: {e}", self.pool.provider, latest.id
                )
                self._record_failure(latest, error)
                raise error from e

            refreshed = self._normalize(latest, refreshed)
            if latest in self.pool:
                self.pool.replace(refreshed)
                self.pool.record_refresh_success(refreshed)
            self.logger.log_refresh(
                self.pool.provider,
                refreshed.id,
                success=True,
                expires_at=_format_expiry(refreshed.expires_at),
                refresh_count=refreshed.refresh_count,
            )
            if self.stats_collector:
                self.stats_collector.record_refresh(self.pool.provider, refreshed.display_id, True)

            await self._persist(refreshed)
            return refreshed

    def _normalize(self, previous: OAuthCredential, refreshed: OAuthCredential) -> OAuthCredential:
        now = time.time()
        expires_at = refreshed.expires_at
        # A reply without a lifetime leaves the expiry unknown rather than stale
        if expires_at is not None and previous.expires_at is not None:
            expires_at = max(expires_at, previous.expires_at)
        return replace(
            refreshed,
            id=previous.id,
            expires_at=expires_at,
            last_refresh=refreshed.last_refresh or now,
            refresh_count=max(refreshed.refresh_count, previous.refresh_count + 1),
        )

    def _record_failure(self, credential: OAuthCredential, error: RefreshFailed) -> None:
        if error.provider is None:
            error.provider = self.pool.provider
        if error.credential_id is None:
            error.credential_id = credential.id
        self.pool.record_refresh_failure(credential, error)
        self.logger.log_refresh(
            self.pool.provider, credential.id, success=False, error_message=error.message
        )
        if self.stats_collector:
            self.stats_collector.record_refresh(self.pool.provider, credential.display_id, False)

    async def _persist(self, credential: OAuthCredential) -> None:
        if self.on_token_refresh is None:
            return
        try:
            result = self.on_token_refresh(credential)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.logger.warning(
                f"Provider {self.pool.provider}: failed to persist refreshed token "
                f"{credential.id}: {type(e).__name__}: {e}"
            )


@dataclass
class AuthorizationRequest:
    """Everything needed to finish an authorization code flow."""

    url: str
    state: str
    verifier: str


class PKCEHelper:
    """Authorization code flow with PKCE (S256)."""

    def __init__(
        self,
        client_id: str,
        auth_url: str,
        token_url: str,
        redirect_uri: str,
        scopes: list[str] | None = None,
        client_secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.auth_url = auth_url
        self.token_url = token_url
        self.redirect_uri = redirect_uri
        self.scopes = scopes or []
        self.http_client = http_client

    @staticmethod
    def generate_verifier() -> str:
        return base64.urlsafe_b64encode(secrets.token_bytes(128)).rstrip(b"=").decode("ascii")

    @staticmethod
    def challenge_for(verifier: str) -> str:
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    @staticmethod
    def generate_state() -> str:
        return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii")

    def build_authorization_url(self, state: str, challenge: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
        separator = "&" if "?" in self.auth_url else "?"
        return f"{self.auth_url}{separator}{urlencode(params)}"

    def begin(self) -> AuthorizationRequest:
        """Generate state and verifier and the URL to send the user to."""
        state = self.generate_state()
        verifier = self.generate_verifier()
        return AuthorizationRequest(
            url=self.build_authorization_url(state, self.challenge_for(verifier)),
            state=state,
            verifier=verifier,
        )

    @staticmethod
    def validate_callback(params: Mapping[str, str], expected_state: str) -> str:
        """Check the redirect parameters and return the authorization code.

        Raises:
            RefreshFailed: On an error parameter, a state mismatch or a missing code
        """
        error = params.get("error")
        if error:
            description = params.get("error_description")
            message = f"Authorization failed: {error}"
            if description:
                message += f" ({description})"
            raise RefreshFailed(message)
        if params.get("state") != expected_state:
            raise RefreshFailed("Authorization state mismatch")
        code = params.get("code")
        if not code:
            raise RefreshFailed("Authorization code is missing")
        return code

    async def exchange_code(
        self, code: str, verifier: str, credential_id: str = "default"
    ) -> OAuthCredential:
        """Exchange an authorization code for an OAuth credential."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": verifier,
        }
        if self.client_secret:
            data["client_secret"] = self.client_secret

        client = self.http_client or httpx.AsyncClient()
        try:
            response = await client.post(
                self.token_url, data=data, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            raise RefreshFailed(f"Code exchange failed: {e}", credential_id=credential_id) from e
        finally:
            if self.http_client is None:
                await client.aclose()

        pending = OAuthCredential(
            id=credential_id,
            access_token="",
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=tuple(self.scopes),
        )
        credential = _apply_token_response(pending, response, "oauth")
        # The first token is an exchange, not a refresh
        return replace(credential, refresh_count=0, last_refresh=None)
