"""
Discord OAuth2 client (Authorization Code + PKCE).
begin_login -> redirect to Discord; callback -> validate_callback_state, exchange_code;
then fetch_current_user with the stored bearer token. No automatic refresh: an access
token within TOKEN_SAFETY_MARGIN_SECONDS of expiry reads as absent and the user logs in again.
"""
import asyncio
import logging
import secrets
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

import httpx

from portal_web.config import (
    DISCORD_API_ENDPOINT,
    DISCORD_AUTHORIZE_URL,
    DISCORD_CDN_ENDPOINT,
    DISCORD_CLIENT_ID,
    DISCORD_REDIRECT_URI,
    DISCORD_SCOPES,
    HTTP_TIMEOUT_SECONDS,
    MAX_CACHED_SCOPES,
    TOKEN_SAFETY_MARGIN_SECONDS,
)
from portal_web.credential_store import CredentialStore, PendingAuthorization, TokenSet
from portal_web.errors import (
    ConcurrencyError,
    ExchangeFailed,
    InvalidProviderResponse,
    ProviderError,
    TokenExpired,
    Unauthenticated,
    VerifierUnavailable,
)
from portal_web.pkce import build_authorize_url, derive_code_challenge, generate_code_verifier, generate_state

logger = logging.getLogger(__name__)


@dataclass
class DiscordUser:
    """Payload of GET /users/@me."""
    id: str
    username: str
    discriminator: str = "0"
    avatar: str | None = None
    email: str | None = None
    verified: bool = False
    global_name: str | None = None

    @classmethod
    def from_payload(cls, data: dict) -> "DiscordUser":
        if not isinstance(data, dict) or not data.get("id") or not data.get("username"):
            raise InvalidProviderResponse("Discord user payload missing id or username")
        return cls(
            id=str(data["id"]),
            username=data["username"],
            discriminator=str(data.get("discriminator") or "0"),
            avatar=data.get("avatar"),
            email=data.get("email"),
            verified=bool(data.get("verified", False)),
            global_name=data.get("global_name"),
        )


def avatar_url(user_id: str, avatar_hash: str, size: int = 128) -> str:
    return f"{DISCORD_CDN_ENDPOINT}/avatars/{user_id}/{avatar_hash}.png?size={size}"


def default_avatar_url(discriminator: str) -> str:
    """Discord's embed avatar for users without a custom one (0-4 by discriminator)."""
    try:
        index = int(discriminator) % 5
    except (TypeError, ValueError):
        index = 0
    return f"{DISCORD_CDN_ENDPOINT}/embed/avatars/{index}.png"


def _error_body(response: httpx.Response) -> dict:
    """JSON error body from Discord, or {} when it is not JSON."""
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class DiscordAuthService:
    """One instance per browser scope: owns the token cache and the exchange guard."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        client_id: str = DISCORD_CLIENT_ID,
        redirect_uri: str = DISCORD_REDIRECT_URI,
        scopes: str = DISCORD_SCOPES,
        authorize_url: str = DISCORD_AUTHORIZE_URL,
        api_endpoint: str = DISCORD_API_ENDPOINT,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        safety_margin: float = TOKEN_SAFETY_MARGIN_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.authorize_url = authorize_url
        self.api_endpoint = api_endpoint.rstrip("/")
        self.timeout = timeout
        self.safety_margin = safety_margin
        self._transport = transport
        self._clock = clock
        self._tokens: TokenSet | None = None
        self._exchanging = False

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    # --- login initiation ---

    def begin_login(self) -> str:
        """
        Drop any previous attempt and tokens, store a fresh verifier + state, and return
        the Discord authorize URL. The record is stored before the URL is handed out.
        """
        self.clear_all_credentials()
        code_verifier = generate_code_verifier()
        state = generate_state()
        self.store.save(PendingAuthorization(code_verifier=code_verifier, state=state, created_at=self._clock()))
        logger.info("Login started for scope %s", self.store.scope)
        return build_authorize_url(
            authorize_url=self.authorize_url,
            client_id=self.client_id,
            redirect_uri=self.redirect_uri,
            scope=self.scopes,
            state=state,
            code_challenge=derive_code_challenge(code_verifier),
        )

    def validate_callback_state(self, received_state: str) -> bool:
        """
        True when the stored, unexpired state equals received_state. The record is kept
        on success (exchange_code still needs the verifier) and cleared on failure.
        """
        pending = self.store.load()
        if pending is None:
            logger.warning("No pending authorization for state validation")
            self.clear_all_credentials()
            return False
        if not secrets.compare_digest(pending.state.encode(), received_state.encode()):
            logger.error("State validation failed - possible CSRF attempt")
            self.clear_all_credentials()
            return False
        return True

    # --- code exchange ---

    @property
    def exchange_in_progress(self) -> bool:
        return self._exchanging

    async def exchange_code(self, code: str) -> TokenSet:
        """
        Exchange the authorization code for tokens. Only one exchange may run at a time;
        a second call while one is in flight raises ConcurrencyError without touching it.
        """
        if self._exchanging:
            raise ConcurrencyError("Token exchange already in progress")
        self._exchanging = True
        try:
            try:
                code_verifier = await asyncio.to_thread(self._stored_verifier)
            except VerifierUnavailable as e:
                logger.warning("%s; attempting exchange without PKCE", e)
                return await self._exchange_without_verifier(code)

            response = await self._post_token(
                {
                    "client_id": self.client_id,
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.redirect_uri,
                    "code_verifier": code_verifier,
                }
            )
            if not response.is_success:
                err = _error_body(response)
                error_code = err.get("error")
                logger.error("Token exchange rejected: status=%s error=%s", response.status_code, error_code)
                await asyncio.to_thread(self.clear_all_credentials)
                if error_code == "invalid_grant":
                    raise ExchangeFailed(
                        "Discord OAuth error: Authorization code expired or already used",
                        reason="invalid_grant",
                    )
                detail = err.get("error_description") or error_code or "Authentication failed"
                raise ExchangeFailed(f"Discord OAuth error: {detail}", reason=error_code)

            tokens = await asyncio.to_thread(self._accept_token_response, response)
            await asyncio.to_thread(self.store.clear_pending)
            logger.info("Token exchange completed for scope %s", self.store.scope)
            return tokens
        finally:
            self._exchanging = False

    def _stored_verifier(self) -> str:
        pending = self.store.load()
        if pending is None:
            raise VerifierUnavailable("Code verifier not found")
        return pending.code_verifier

    async def _exchange_without_verifier(self, code: str) -> TokenSet:
        """Best-effort recovery when the verifier is gone (expired, cleared, other tab)."""
        response = await self._post_token(
            {
                "client_id": self.client_id,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
            degraded=True,
        )
        if not response.is_success:
            error_code = _error_body(response).get("error")
            logger.error("Fallback token exchange rejected: status=%s error=%s", response.status_code, error_code)
            await asyncio.to_thread(self.clear_all_credentials)
            raise ExchangeFailed(
                "Authentication failed. Please try logging in again.",
                reason=error_code,
                degraded=True,
            )
        tokens = await asyncio.to_thread(self._accept_token_response, response, True)
        await asyncio.to_thread(self.store.clear_pending)
        return tokens

    async def _post_token(self, form: dict, degraded: bool = False) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.post(
                    f"{self.api_endpoint}/oauth2/token",
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.error("Token request failed: %s", e)
            await asyncio.to_thread(self.clear_all_credentials)
            raise ExchangeFailed(f"Token exchange failed: {e}", degraded=degraded) from e

    def _accept_token_response(self, response: httpx.Response, degraded: bool = False) -> TokenSet:
        try:
            data = response.json()
            tokens = TokenSet.from_response(data, self._clock())
        except (ValueError, KeyError, TypeError) as e:
            self.clear_all_credentials()
            raise ExchangeFailed("Discord OAuth error: malformed token response", degraded=degraded) from e
        self._tokens = tokens
        self.store.save_tokens(tokens)
        return tokens

    # --- token use ---

    def get_valid_token(self) -> str | None:
        """Cached access token if usable; never calls Discord."""
        if self._tokens is None:
            self._tokens = self.store.load_tokens()
        if self._tokens is None:
            return None
        if not self._tokens.usable(self._clock(), self.safety_margin):
            logger.info("Discord token expired or about to expire")
            return None
        return self._tokens.access_token

    def is_authenticated(self) -> bool:
        return self.get_valid_token() is not None

    async def fetch_current_user(self) -> DiscordUser:
        token = await asyncio.to_thread(self.get_valid_token)
        if not token:
            raise Unauthenticated("No valid Discord token available")

        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.api_endpoint}/users/@me",
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"Failed to fetch Discord user data: {e}") from e

        if response.status_code == 401:
            logger.warning("Discord token expired or invalid")
            await asyncio.to_thread(self.clear_all_credentials)
            raise TokenExpired("Discord token expired. Please log in again.")
        if not response.is_success:
            message = _error_body(response).get("message") or "Unknown error"
            raise ProviderError(f"Failed to fetch Discord user data: {message}", status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as e:
            raise InvalidProviderResponse("Discord user payload is not JSON") from e
        return DiscordUser.from_payload(payload)

    def clear_all_credentials(self) -> None:
        """Drop pending authorization and tokens. Safe at any time; idempotent."""
        self._tokens = None
        self.store.clear_all()


_services: "OrderedDict[str, DiscordAuthService]" = OrderedDict()


def _evict_idle() -> None:
    """Drop least recently used services over MAX_CACHED_SCOPES; never one mid-exchange."""
    for scope in list(_services):
        if len(_services) <= MAX_CACHED_SCOPES:
            break
        if not _services[scope].exchange_in_progress:
            del _services[scope]


def get_auth_service(scope: str) -> DiscordAuthService:
    """Shared service per browser scope so concurrent requests see the same guard."""
    service = _services.get(scope)
    if service is None:
        service = DiscordAuthService(CredentialStore(scope))
        _services[scope] = service
        _evict_idle()
    else:
        _services.move_to_end(scope)
    return service


async def find_auth_service(scope: str | None) -> DiscordAuthService | None:
    """
    Service for a scope that is registered or still holds stored tokens; None otherwise.
    Read paths use this so anonymous or unknown scopes never allocate a service.
    """
    if not scope:
        return None
    if scope not in _services:
        tokens = await asyncio.to_thread(CredentialStore(scope).load_tokens)
        if tokens is None:
            return None
    return get_auth_service(scope)


def discard_auth_service(scope: str) -> None:
    """Forget a scope's service unless an exchange is still running on it."""
    service = _services.get(scope)
    if service is not None and not service.exchange_in_progress:
        del _services[scope]
