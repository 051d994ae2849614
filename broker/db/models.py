"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


ENABLED_TRUE = "TRUE"
ENABLED_FALSE = "FALSE"


class UserCredential(Base):
    """
    ORM model for user_credentials table.

    One row per user. Replaced wholesale on every setup submission.
    """

    __tablename__ = "user_credentials"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    access_key_id: Mapped[str] = mapped_column(String(128), nullable=False)
    secret_access_key: Mapped[str] = mapped_column(String(255), nullable=False)
    session_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    region: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging (no secrets)."""
        return f"<UserCredential(user_id={self.user_id}, region={self.region})>"


class ConsentGrant(Base):
    """
    ORM model for consent_grants table.

    granted only flips back to false through an explicit revoke.
    """

    __tablename__ = "consent_grants"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    category_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    granted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    granted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (Index("idx_consent_grants_user", "user_id"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ConsentGrant(user_id={self.user_id}, category_id={self.category_id}, "
            f"granted={self.granted})>"
        )


class NotificationPreference(Base):
    """
    ORM model for notification_preferences table.

    Per-type override. When present it fully replaces the legacy settings for
    that type. ``enabled`` is stored as text for compatibility with rows
    written by the settings form.
    """

    __tablename__ = "notification_preferences"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    notification_type: Mapped[str] = mapped_column(String(64), primary_key=True)

    channel: Mapped[str | None] = mapped_column(Text, nullable=True)
    enabled: Mapped[str] = mapped_column(String(5), nullable=False, default=ENABLED_TRUE)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            f"enabled IN ('{ENABLED_TRUE}', '{ENABLED_FALSE}')",
            name="ck_notification_preferences_enabled",
        ),
        Index("idx_notification_preferences_user", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<NotificationPreference(user_id={self.user_id}, "
            f"type={self.notification_type}, enabled={self.enabled})>"
        )


class LegacyPreference(Base):
    """
    ORM model for legacy_preferences table.

    Single global channel and flag set per user, consulted only when no
    per-type row exists.
    """

    __tablename__ = "legacy_preferences"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    channel: Mapped[str | None] = mapped_column(Text, nullable=True)
    realtime_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    daily_digest_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    weekly_digest_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<LegacyPreference(user_id={self.user_id})>"
