"""
Callback handling after Discord redirects back to /auth/callback.
loading -> success | error, evaluated once per page visit. Nothing is retried:
authorization codes are single-use, so every failure sends the user back to /login.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping

from portal_web.config import SUCCESS_REDIRECT_DELAY_SECONDS
from portal_web.discord_auth import DiscordAuthService
from portal_web.errors import (
    AuthError,
    ExchangeFailed,
    InvalidProviderResponse,
    MissingAuthorizationCode,
    ProfileSyncFailed,
    StateMismatch,
    TokenExpired,
    VerifierUnavailable,
)

logger = logging.getLogger(__name__)

STATUS_LOADING = "loading"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

# Progress checkpoints (cosmetic only)
PROGRESS_PARAMS_READ = 10
PROGRESS_CODE_PRESENT = 25
PROGRESS_STATE_CHECKED = 40
PROGRESS_LOGIN_STARTED = 50
PROGRESS_LOGIN_DONE = 80
PROGRESS_COMPLETE = 100

INVALID_STATE_MESSAGE = "Invalid state parameter - please try logging in again"
MISSING_CODE_MESSAGE = "No authorization code received from Discord"

_RESTART_HINT_MARKERS = ("session expired", "Invalid state parameter", "code expired", "already used")


@dataclass
class CallbackOutcome:
    status: str
    error_message: str = ""
    progress: int = 0
    redirect_to: str | None = None
    redirect_after: int | None = None

    @property
    def needs_restart_hint(self) -> bool:
        """Error likely caused by a page refresh mid-login, a slow login, or a CSRF check."""
        return self.status == STATUS_ERROR and any(m in self.error_message for m in _RESTART_HINT_MARKERS)


def humanize_login_error(exc: Exception) -> str:
    """User-facing guidance for a failed login; unknown errors keep their own message."""
    if isinstance(exc, VerifierUnavailable) or (isinstance(exc, ExchangeFailed) and exc.degraded):
        return "Authentication session expired. Please try logging in again."
    if isinstance(exc, ExchangeFailed) and exc.code_expired_or_used:
        return "Authentication code expired or already used. Please try logging in again."
    if isinstance(exc, TokenExpired):
        return "Discord session expired. Please try logging in again."
    if isinstance(exc, ProfileSyncFailed):
        return "Failed to create your profile. Please try again or contact support."
    if isinstance(exc, StateMismatch):
        return "Security validation failed. Please try logging in again."
    return str(exc) or "Login failed"


def _param(params: Mapping[str, str], name: str) -> str | None:
    value = params.get(name)
    return value or None


class CallbackHandler:
    """Runs the callback steps for one page visit; re-invoking returns the first outcome."""

    def __init__(
        self,
        service: DiscordAuthService,
        login: Callable[[str], Awaitable[object]],
        *,
        home_url: str = "/",
        redirect_delay: int = SUCCESS_REDIRECT_DELAY_SECONDS,
    ):
        self.service = service
        self._login = login
        self.home_url = home_url
        self.redirect_delay = redirect_delay
        self.status = STATUS_LOADING
        self.error_message = ""
        self.progress = 0
        self._processed = False
        self._outcome: CallbackOutcome | None = None

    def _advance(self, progress: int) -> None:
        self.progress = max(self.progress, progress)

    def _finish(self, status: str, error_message: str = "") -> CallbackOutcome:
        self.status = status
        self.error_message = error_message
        outcome = CallbackOutcome(status=status, error_message=error_message, progress=self.progress)
        if status == STATUS_SUCCESS:
            outcome.redirect_to = self.home_url
            outcome.redirect_after = self.redirect_delay
        self._outcome = outcome
        return outcome

    @property
    def outcome(self) -> CallbackOutcome:
        if self._outcome is None:
            return CallbackOutcome(status=self.status, progress=self.progress)
        return self._outcome

    async def _check_redirect(self, code: str | None, error: str | None, state: str | None) -> str:
        """Validate the redirect parameters; returns the code or raises."""
        if error:
            raise InvalidProviderResponse(f"Discord OAuth error: {error}")
        if not code:
            raise MissingAuthorizationCode(MISSING_CODE_MESSAGE)
        self._advance(PROGRESS_CODE_PRESENT)

        if state:
            if not await asyncio.to_thread(self.service.validate_callback_state, state):
                raise StateMismatch(INVALID_STATE_MESSAGE)
        else:
            logger.warning("No state parameter on callback; continuing without CSRF check")
        self._advance(PROGRESS_STATE_CHECKED)
        return code

    async def handle(self, params: Mapping[str, str]) -> CallbackOutcome:
        if self._processed:
            return self.outcome
        self._processed = True

        code = _param(params, "code")
        error = _param(params, "error")
        state = _param(params, "state")
        logger.info("Auth callback: code=%s error=%s state=%s", bool(code), error, bool(state))
        self._advance(PROGRESS_PARAMS_READ)

        try:
            code = await self._check_redirect(code, error, state)
        except AuthError as e:
            logger.warning("Callback rejected: %s", e)
            return self._finish(STATUS_ERROR, str(e))

        self._advance(PROGRESS_LOGIN_STARTED)
        try:
            await self._login(code)
        except AuthError as e:
            logger.error("Login failed: %s", e)
            return self._finish(STATUS_ERROR, humanize_login_error(e))
        except Exception as e:
            logger.exception("Unexpected login failure")
            return self._finish(STATUS_ERROR, humanize_login_error(e))
        self._advance(PROGRESS_LOGIN_DONE)
        self._advance(PROGRESS_COMPLETE)
        return self._finish(STATUS_SUCCESS)
