"""
Login flow errors. Everything raised by the auth service and the callback
handler derives from AuthError so routes can catch one type.
"""


class AuthError(Exception):
    """Base class for Discord login failures."""


class InvalidProviderResponse(AuthError):
    """Discord redirected back with ?error=... or answered with a non-2xx status."""


class ProviderError(InvalidProviderResponse):
    """Non-2xx (other than 401) from a Discord API call."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MissingAuthorizationCode(AuthError):
    pass


class StateMismatch(AuthError):
    """CSRF check failed, or there was no pending authorization to check against."""


class VerifierUnavailable(AuthError):
    """PKCE code_verifier missing or expired at exchange time."""


class ExchangeFailed(AuthError):
    """Token endpoint rejected the authorization code."""

    def __init__(self, message: str, *, reason: str | None = None, degraded: bool = False):
        super().__init__(message)
        self.reason = reason
        # True when the exchange was attempted without a code_verifier
        self.degraded = degraded

    @property
    def code_expired_or_used(self) -> bool:
        return self.reason == "invalid_grant"


class TokenExpired(AuthError):
    """Discord answered 401 to a bearer call; all credentials were cleared."""


class Unauthenticated(AuthError):
    """No usable access token."""


class ProfileSyncFailed(AuthError):
    pass


class ConcurrencyError(AuthError):
    """A second code exchange was attempted while one is in flight."""
