"""
SQLAlchemy models for the portal: per-browser credential records and user profiles.
"""
import json
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


DEFAULT_SETTINGS = {
    "allowWallPosts": True,
    "showOnlineStatus": True,
    "profilePrivate": False,
    "notifications": {
        "guildAnnouncements": True,
        "friendRequests": True,
        "eventReminders": False,
    },
}

DEFAULT_STATS = {
    "totalSessions": 1,
    "totalAchievements": 0,
    "joinedGuilds": 0,
}


class Base(DeclarativeBase):
    pass


class CredentialEntry(Base):
    """One key/value record in a browser's storage scope (value is a JSON string)."""
    __tablename__ = "credential_entries"
    __table_args__ = (UniqueConstraint("scope", "key", name="uq_credential_scope_key"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)


class UserProfile(Base):
    """Application profile keyed by Discord user id."""
    __tablename__ = "user_profiles"

    discord_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    discriminator: Mapped[str | None] = mapped_column(String(8), nullable=True)
    global_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    avatar: Mapped[str] = mapped_column(Text, nullable=False)
    bio: Mapped[str] = mapped_column(Text, default="", nullable=False)
    join_date: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    last_active: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    is_online: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    settings: Mapped[str] = mapped_column(Text, nullable=False)  # stored as JSON string
    stats: Mapped[str] = mapped_column(Text, nullable=False)  # stored as JSON string
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def get_settings(self) -> dict:
        return json.loads(self.settings)

    def get_stats(self) -> dict:
        return json.loads(self.stats)

    def to_dict(self) -> dict:
        return {
            "discordId": self.discord_id,
            "username": self.username,
            "discriminator": self.discriminator,
            "globalName": self.global_name,
            "email": self.email,
            "avatar": self.avatar,
            "bio": self.bio,
            "joinDate": self.join_date.isoformat() if self.join_date else None,
            "lastActive": self.last_active.isoformat() if self.last_active else None,
            "isOnline": self.is_online,
            "settings": self.get_settings(),
            "stats": self.get_stats(),
        }
