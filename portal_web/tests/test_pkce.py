"""Tests for PKCE helpers and the Discord authorize URL."""
import hashlib
import re
from base64 import urlsafe_b64encode
from urllib.parse import parse_qs, urlparse

from portal_web.pkce import build_authorize_url, derive_code_challenge, generate_code_verifier, generate_state

B64URL = re.compile(r"^[A-Za-z0-9_-]+$")


def test_generate_code_verifier_length_and_alphabet():
    verifier = generate_code_verifier()
    assert 43 <= len(verifier) <= 128
    assert B64URL.match(verifier)


def test_code_verifiers_are_distinct():
    assert len({generate_code_verifier() for _ in range(50)}) == 50


def test_generate_state_length_and_alphabet():
    state = generate_state()
    assert len(state) >= 22  # 16 bytes -> 22 chars
    assert B64URL.match(state)
    assert generate_state() != state


def test_code_challenge_is_s256_of_verifier():
    verifier = generate_code_verifier()
    expected = urlsafe_b64encode(hashlib.sha256(verifier.encode("ascii")).digest()).rstrip(b"=").decode("ascii")
    challenge = derive_code_challenge(verifier)
    assert challenge == expected
    assert challenge == derive_code_challenge(verifier)
    assert len(challenge) == 43  # base64url(SHA256 digest) no padding


def test_code_challenge_rfc7636_example():
    # RFC 7636 appendix B
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert derive_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_build_authorize_url_includes_required_params():
    url = build_authorize_url(
        authorize_url="https://discord.com/oauth2/authorize",
        client_id="client1",
        redirect_uri="https://portal.example/auth/callback",
        scope="identify email",
        state="mystate",
        code_challenge="challenge123",
    )
    assert url.startswith("https://discord.com/oauth2/authorize?")
    params = parse_qs(urlparse(url).query)
    assert params["client_id"] == ["client1"]
    assert params["redirect_uri"] == ["https://portal.example/auth/callback"]
    assert params["response_type"] == ["code"]
    assert params["scope"] == ["identify email"]
    assert params["code_challenge"] == ["challenge123"]
    assert params["code_challenge_method"] == ["S256"]
    assert params["state"] == ["mystate"]
