"""
Application session on top of Discord login: map the Discord user to a portal user,
create or update its profile, and remember who is signed in.
"""
import asyncio
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from portal_web.config import MAX_CACHED_SCOPES
from portal_web.database import SessionLocal
from portal_web.discord_auth import (
    DiscordAuthService,
    DiscordUser,
    avatar_url,
    default_avatar_url,
    discard_auth_service,
)
from portal_web.errors import AuthError, ProfileSyncFailed
from portal_web.models import DEFAULT_SETTINGS, DEFAULT_STATS, UserProfile

logger = logging.getLogger(__name__)


@dataclass
class PortalUser:
    id: str  # Discord id; primary key of the profile
    username: str
    avatar: str
    email: str | None = None
    discriminator: str | None = None
    global_name: str | None = None
    profile: dict = field(default_factory=dict)


def to_portal_user(discord_user: DiscordUser) -> PortalUser:
    if discord_user.avatar:
        avatar = avatar_url(discord_user.id, discord_user.avatar)
    else:
        avatar = default_avatar_url(discord_user.discriminator)
    return PortalUser(
        id=discord_user.id,
        username=discord_user.global_name or discord_user.username,
        avatar=avatar,
        email=discord_user.email,
        discriminator=discord_user.discriminator,
        global_name=discord_user.global_name,
    )


class ProfileService:
    """Create/update user profiles keyed by Discord id."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def get_by_discord_id(self, discord_id: str) -> UserProfile | None:
        db = self._session_factory()
        try:
            return db.query(UserProfile).filter(UserProfile.discord_id == discord_id).first()
        finally:
            db.close()

    def sync(self, user: PortalUser) -> UserProfile:
        """
        Existing profile: refresh basic info, last_active and online flag (an update
        failure keeps the old profile). New user: create one; failure raises ProfileSyncFailed.
        """
        now = datetime.now(timezone.utc)
        db = self._session_factory()
        try:
            existing = db.query(UserProfile).filter(UserProfile.discord_id == user.id).first()
            if existing is not None:
                try:
                    existing.username = user.username
                    existing.avatar = user.avatar
                    existing.email = user.email
                    existing.discriminator = user.discriminator
                    existing.global_name = user.global_name
                    existing.last_active = now
                    existing.is_online = True
                    db.commit()
                    logger.info("Updated profile for Discord user %s", user.id)
                except SQLAlchemyError as e:
                    db.rollback()
                    logger.warning("Failed to update profile for %s: %s", user.id, e)
                db.refresh(existing)
                return existing

            profile = UserProfile(
                discord_id=user.id,
                username=user.username,
                discriminator=user.discriminator,
                global_name=user.global_name,
                email=user.email,
                avatar=user.avatar,
                bio="",
                join_date=now,
                last_active=now,
                is_online=True,
                settings=json.dumps(DEFAULT_SETTINGS),
                stats=json.dumps(DEFAULT_STATS),
            )
            try:
                db.add(profile)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Failed to create profile for %s: %s", user.id, e)
                raise ProfileSyncFailed(f"Failed to create user profile: {e}") from e
            db.refresh(profile)
            logger.info("Created profile for Discord user %s", user.id)
            return profile
        finally:
            db.close()

    def set_offline(self, discord_id: str) -> None:
        db = self._session_factory()
        try:
            db.query(UserProfile).filter(UserProfile.discord_id == discord_id).update({"is_online": False})
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("Failed to set %s offline: %s", discord_id, e)
        finally:
            db.close()


class LoginSession:
    """
    Signed-in state for one browser scope. The cached user is only a view: the scope
    counts as signed in while its service still holds a usable token.
    """

    def __init__(self, service: DiscordAuthService, profiles: ProfileService | None = None):
        self.service = service
        self.profiles = profiles or ProfileService()
        self.user: PortalUser | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None and self.service.is_authenticated()

    async def _establish(self) -> PortalUser:
        discord_user = await self.service.fetch_current_user()
        user = to_portal_user(discord_user)
        profile = await asyncio.to_thread(self.profiles.sync, user)
        user.profile = profile.to_dict()
        self.user = user
        return user

    def begin_login(self) -> str:
        """Start a fresh login; whoever was signed in on this scope no longer is."""
        self.user = None
        return self.service.begin_login()

    async def login(self, code: str) -> PortalUser:
        """Exchange code, fetch the Discord user, sync the profile. Any failure clears credentials."""
        try:
            await self.service.exchange_code(code)
            user = await self._establish()
        except Exception:
            self.user = None
            if not self.service.exchange_in_progress:
                await asyncio.to_thread(self.service.clear_all_credentials)
            raise
        logger.info("Login completed for Discord user %s", user.id)
        return user

    async def restore(self) -> PortalUser | None:
        """
        Signed-in user for this page load, or None. A cached user is dropped as soon as
        its token is gone (expired, rejected by Discord, cleared by a new login).
        """
        if not await asyncio.to_thread(self.service.is_authenticated):
            if self.user is not None:
                logger.info("Discord token no longer valid; signing out scope %s", self.service.store.scope)
            self.user = None
            return None
        if self.user is not None:
            return self.user
        try:
            return await self._establish()
        except AuthError as e:
            logger.warning("Failed to restore session: %s", e)
            await asyncio.to_thread(self.service.clear_all_credentials)
            return None

    def refresh_profile(self) -> dict | None:
        if self.user is None:
            return None
        profile = self.profiles.get_by_discord_id(self.user.id)
        if profile is not None:
            self.user.profile = profile.to_dict()
        return self.user.profile

    def logout(self) -> None:
        scope = self.service.store.scope
        if self.user is not None:
            self.profiles.set_offline(self.user.id)
        self.service.clear_all_credentials()
        self.user = None
        discard_login_session(scope)
        discard_auth_service(scope)
        logger.info("Logout completed for scope %s", scope)


_sessions: "OrderedDict[str, LoginSession]" = OrderedDict()


def get_login_session(service: DiscordAuthService) -> LoginSession:
    scope = service.store.scope
    session = _sessions.get(scope)
    if session is None or session.service is not service:
        session = LoginSession(service)
        _sessions[scope] = session
        while len(_sessions) > MAX_CACHED_SCOPES:
            _sessions.popitem(last=False)
    else:
        _sessions.move_to_end(scope)
    return session


def discard_login_session(scope: str) -> None:
    _sessions.pop(scope, None)
