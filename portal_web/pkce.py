"""
PKCE (RFC 7636) helpers for Discord login: verifier, S256 challenge, state, authorize URL.
All randomness comes from the secrets module.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from urllib.parse import urlencode


def _b64url(raw: bytes) -> str:
    return urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    """32 random bytes -> 43 chars base64url (256 bits entropy)."""
    return _b64url(secrets.token_bytes(32))


def derive_code_challenge(code_verifier: str) -> str:
    """S256: base64url(SHA256(verifier)) without padding."""
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_state() -> str:
    """Opaque anti-CSRF value (128 bits); echoed back on the callback."""
    return _b64url(secrets.token_bytes(16))


def build_authorize_url(
    *,
    authorize_url: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
    code_challenge: str,
) -> str:
    """Build Discord /oauth2/authorize URL."""
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": scope,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "state": state,
    }
    return f"{authorize_url}?{urlencode(params)}"
