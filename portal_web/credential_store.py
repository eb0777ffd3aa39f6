"""
Durable per-browser storage for the login flow.
Two records per scope: the pending authorization (code_verifier, state, timestamp)
written at /login, and the token set written after a successful code exchange.
Absence is a normal state; malformed or expired records read as absent and are deleted.
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from portal_web.config import PENDING_AUTH_TTL_SECONDS
from portal_web.database import SessionLocal
from portal_web.models import CredentialEntry

logger = logging.getLogger(__name__)

PENDING_KEY = "discord_auth_data"
TOKENS_KEY = "discord_tokens"


@dataclass
class PendingAuthorization:
    code_verifier: str
    state: str
    created_at: float

    def expired(self, now: float, ttl: float = PENDING_AUTH_TTL_SECONDS) -> bool:
        return (now - self.created_at) > ttl

    def to_json(self) -> str:
        return json.dumps({"codeVerifier": self.code_verifier, "state": self.state, "timestamp": self.created_at})

    @classmethod
    def from_json(cls, raw: str) -> "PendingAuthorization":
        data = json.loads(raw)
        return cls(
            code_verifier=str(data["codeVerifier"]),
            state=str(data["state"]),
            created_at=float(data["timestamp"]),
        )


@dataclass
class TokenSet:
    access_token: str
    expires_at: float
    refresh_token: str | None = None

    def usable(self, now: float, margin: float) -> bool:
        """False once now >= expires_at - margin, even if Discord would still accept it."""
        return bool(self.access_token) and now < (self.expires_at - margin)

    @classmethod
    def from_response(cls, data: dict, now: float) -> "TokenSet":
        """Build from a Discord token response; expires_in is relative to issuance."""
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or None,
            expires_at=now + float(data.get("expires_in", 0)),
        )

    def to_json(self) -> str:
        return json.dumps(
            {"accessToken": self.access_token, "refreshToken": self.refresh_token, "expiresAt": self.expires_at}
        )

    @classmethod
    def from_json(cls, raw: str) -> "TokenSet":
        data = json.loads(raw)
        return cls(
            access_token=str(data["accessToken"]),
            refresh_token=data.get("refreshToken") or None,
            expires_at=float(data["expiresAt"]),
        )


class CredentialStore:
    """Key/value records for one browser scope, persisted through SQLAlchemy."""

    def __init__(
        self,
        scope: str,
        session_factory: sessionmaker = SessionLocal,
        clock: Callable[[], float] = time.time,
        ttl_seconds: float = PENDING_AUTH_TTL_SECONDS,
    ):
        self.scope = scope
        self._session_factory = session_factory
        self._clock = clock
        self.ttl_seconds = ttl_seconds

    # --- raw key/value access ---

    def _entry(self, db: Session, key: str) -> CredentialEntry | None:
        return (
            db.query(CredentialEntry)
            .filter(CredentialEntry.scope == self.scope, CredentialEntry.key == key)
            .first()
        )

    def _get(self, key: str) -> str | None:
        db = self._session_factory()
        try:
            entry = self._entry(db, key)
            return entry.value if entry else None
        finally:
            db.close()

    def _set(self, key: str, value: str) -> None:
        db = self._session_factory()
        try:
            entry = self._entry(db, key)
            if entry is None:
                db.add(CredentialEntry(scope=self.scope, key=key, value=value))
            else:
                entry.value = value
            db.commit()
        finally:
            db.close()

    def _delete(self, key: str) -> None:
        db = self._session_factory()
        try:
            db.query(CredentialEntry).filter(
                CredentialEntry.scope == self.scope, CredentialEntry.key == key
            ).delete()
            db.commit()
        finally:
            db.close()

    # --- pending authorization ---

    def save(self, pending: PendingAuthorization) -> None:
        """Overwrite any existing pending authorization."""
        self._set(PENDING_KEY, pending.to_json())

    def load(self) -> PendingAuthorization | None:
        raw = self._get(PENDING_KEY)
        if raw is None:
            return None
        try:
            pending = PendingAuthorization.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Malformed pending authorization in scope %s: %s", self.scope, e)
            self.clear_pending()
            return None
        if pending.expired(self._clock(), self.ttl_seconds):
            logger.warning("Pending authorization expired, clearing")
            self.clear_pending()
            return None
        return pending

    def clear_pending(self) -> None:
        self._delete(PENDING_KEY)

    # --- tokens ---

    def save_tokens(self, tokens: TokenSet) -> None:
        self._set(TOKENS_KEY, tokens.to_json())

    def load_tokens(self) -> TokenSet | None:
        raw = self._get(TOKENS_KEY)
        if raw is None:
            return None
        try:
            return TokenSet.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Malformed token record in scope %s: %s", self.scope, e)
            self.clear_tokens()
            return None

    def clear_tokens(self) -> None:
        self._delete(TOKENS_KEY)

    def clear_all(self) -> None:
        self.clear_pending()
        self.clear_tokens()
