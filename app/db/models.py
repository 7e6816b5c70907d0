"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, date, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class RedemptionToken(Base):
    """
    ORM model for redemption_tokens table.

    One row per minted code. Rows are never deleted; terminal rows are kept
    for audit and replay detection.
    """

    __tablename__ = "redemption_tokens"

    # Primary Key - the opaque identifier carried in the scannable code
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Bound triple
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    offer_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    merchant_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)

    # Diagnostic only
    device_tag: Mapped[str] = mapped_column(String(100), nullable=False, default="unknown")

    # Validity window
    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ttl_seconds: Mapped[int] = mapped_column(Integer, nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    consumed_by_merchant_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), nullable=True
    )
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    superseded_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'consumed', 'expired', 'superseded')",
            name="ck_token_status_valid",
        ),
        CheckConstraint("expires_at > issued_at", name="ck_token_expiry_after_issue"),
        CheckConstraint("ttl_seconds > 0", name="ck_token_ttl_positive"),
        # At most one active token per (user, offer)
        Index(
            "uq_tokens_one_active_per_user_offer",
            "user_id",
            "offer_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
        Index("idx_tokens_user_offer", "user_id", "offer_id"),
        Index(
            "idx_tokens_active_expires_at",
            "expires_at",
            postgresql_where=text("status = 'active'"),
        ),
        Index("idx_tokens_merchant_id", "merchant_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<RedemptionToken(id={self.id[:8]}..., user_id={self.user_id}, "
            f"offer_id={self.offer_id}, status={self.status})>"
        )


class QuotaRecord(Base):
    """
    ORM model for quota_records table.

    Per-user count of free redemptions left. Decremented only by token
    issuance; restored only by external grants.
    """

    __tablename__ = "quota_records"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    remaining: Mapped[int] = mapped_column(BigInteger, nullable=False)
    granted_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("remaining >= 0", name="ck_quota_remaining_non_negative"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<QuotaRecord(user_id={self.user_id}, remaining={self.remaining})>"


class OfferDailyCounter(Base):
    """
    ORM model for offer_daily_counters table.

    One row per offer per merchant-local day. The day is part of the key, so
    counters roll over without a reset job.
    """

    __tablename__ = "offer_daily_counters"

    offer_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cap: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("used_count >= 0", name="ck_counter_used_non_negative"),
        CheckConstraint("cap IS NULL OR used_count <= cap", name="ck_counter_within_cap"),
        Index("idx_offer_daily_counters_day", "day"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<OfferDailyCounter(offer_id={self.offer_id}, day={self.day}, "
            f"used={self.used_count}, cap={self.cap})>"
        )


class Offer(Base):
    """
    ORM model for offers table.

    Owned by the merchant-facing CRUD; the redemption engine only reads it.
    """

    __tablename__ = "offers"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    per_day_cap: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "per_day_cap IS NULL OR per_day_cap >= 0", name="ck_offer_cap_non_negative"
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Offer(id={self.id}, merchant_id={self.merchant_id}, active={self.active})>"


class ScanAttempt(Base):
    """
    ORM model for scan_attempts table.

    Audit log of every validation, written in the validation's transaction.
    """

    __tablename__ = "scan_attempts"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    token_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    scanning_merchant_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index(
            "idx_scan_attempts_token_id",
            "token_id",
            postgresql_where=text("token_id IS NOT NULL"),
        ),
        Index("idx_scan_attempts_merchant_created", "scanning_merchant_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ScanAttempt(id={self.id}, merchant={self.scanning_merchant_id}, "
            f"outcome={self.outcome}, reason={self.reason})>"
        )
