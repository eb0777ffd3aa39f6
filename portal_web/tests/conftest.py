"""
Pytest configuration for portal_web. In-memory SQLite so tests don't touch the filesystem;
Discord is replaced by an httpx.MockTransport.
"""
import os

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["PORTAL_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["DISCORD_CLIENT_ID"] = "test-client-id"
os.environ["DISCORD_REDIRECT_URI"] = "http://127.0.0.1:8000/auth/callback"

import httpx
import pytest

from portal_web import discord_auth, session
from portal_web.credential_store import CredentialStore
from portal_web.database import SessionLocal, init_db
from portal_web.discord_auth import DiscordAuthService
from portal_web.models import CredentialEntry, UserProfile

TOKEN_RESPONSE = {
    "access_token": "discord-at",
    "token_type": "Bearer",
    "expires_in": 604800,
    "refresh_token": "discord-rt",
    "scope": "identify email",
}

USER_PAYLOAD = {
    "id": "80351110224678912",
    "username": "nelly",
    "discriminator": "1337",
    "avatar": "8342729096ea3675442027381ff50dfe",
    "email": "nelly@example.com",
    "verified": True,
    "global_name": "Nelly",
}


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDiscord:
    """Answers /oauth2/token and /users/@me; records every request."""

    def __init__(self):
        self.token_status = 200
        self.token_body: dict = dict(TOKEN_RESPONSE)
        self.user_status = 200
        self.user_body: dict = dict(USER_PAYLOAD)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/oauth2/token"):
            return httpx.Response(self.token_status, json=self.token_body)
        if request.url.path.endswith("/users/@me"):
            return httpx.Response(self.user_status, json=self.user_body)
        return httpx.Response(404, json={"message": "404: Not Found"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def token_forms(self) -> list[dict]:
        from urllib.parse import parse_qsl

        return [
            dict(parse_qsl(r.content.decode()))
            for r in self.requests
            if r.url.path.endswith("/oauth2/token")
        ]


@pytest.fixture(autouse=True)
def clean_state():
    """Fresh tables and no cached services between tests."""
    init_db()
    yield
    db = SessionLocal()
    try:
        db.query(CredentialEntry).delete()
        db.query(UserProfile).delete()
        db.commit()
    finally:
        db.close()
    discord_auth._services.clear()
    session._sessions.clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return CredentialStore("test-scope", clock=clock)


@pytest.fixture
def fake_discord():
    return FakeDiscord()


@pytest.fixture
def service(store, clock, fake_discord):
    return DiscordAuthService(store, transport=fake_discord.transport, clock=clock)
