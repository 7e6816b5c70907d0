"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import date
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class TokenStatus(str, Enum):
    """Redemption token lifecycle status. Transitions only leave ACTIVE."""

    ACTIVE = "active"
    CONSUMED = "consumed"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"


class ScanOutcome(str, Enum):
    """Top-level result of a scan validation."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"


class RejectReason(str, Enum):
    """Closed vocabulary shown to the merchant UI on a rejected scan."""

    UNKNOWN_TOKEN = "unknown_token"
    ALREADY_USED = "already_used"
    SUPERSEDED = "superseded"
    EXPIRED = "expired"
    MERCHANT_MISMATCH = "merchant_mismatch"
    CAP_REACHED = "cap_reached"


class IssueFailure(str, Enum):
    """Reasons a token could not be issued."""

    QUOTA_EXHAUSTED = "quota_exhausted"
    OFFER_INACTIVE = "offer_inactive"
    OFFER_NOT_FOUND = "offer_not_found"
    MERCHANT_MISMATCH = "merchant_mismatch"


# ============================================================================
# Token Issuance Models
# ============================================================================


class IssueTokenRequest(BaseModel):
    """POST /v1/redemptions/tokens request body."""

    offer_id: UUID
    merchant_id: UUID
    device_tag: str = Field(default="unknown", min_length=1, max_length=100)
    ttl_seconds: int | None = Field(
        None,
        gt=0,
        description="Requested validity window; clamped to the server's bounds",
    )

    @field_validator("device_tag")
    @classmethod
    def strip_device_tag(cls, v: str) -> str:
        """Device tags are diagnostic only; normalise whitespace."""
        v = v.strip()
        if not v:
            raise ValueError("device_tag cannot be blank")
        return v


class IssueTokenResponse(BaseModel):
    """POST /v1/redemptions/tokens response."""

    token: str = Field(..., description="Value to encode in the scannable code")
    token_id: str
    offer_id: UUID
    merchant_id: UUID
    issued_at: str  # ISO 8601 timestamp
    expires_at: str  # ISO 8601 timestamp
    ttl_seconds: int
    free_remaining: int
    superseded_token_id: str | None = None


class QuotaResponse(BaseModel):
    """GET /v1/redemptions/quota response."""

    remaining: int


# ============================================================================
# Scan Validation Models
# ============================================================================


class ValidateScanRequest(BaseModel):
    """POST /v1/redemptions/scans request body."""

    token: str = Field(..., min_length=1, max_length=512)

    @field_validator("token")
    @classmethod
    def strip_token(cls, v: str) -> str:
        """Scanners sometimes append whitespace or newlines."""
        return v.strip()


class ValidateScanResponse(BaseModel):
    """POST /v1/redemptions/scans response."""

    outcome: ScanOutcome
    reason: RejectReason | None = None
    offer_id: UUID | None = None
    used_today: int | None = None


# ============================================================================
# Offer Usage Models
# ============================================================================


class OfferUsageResponse(BaseModel):
    """GET /v1/offers/{offer_id}/usage response."""

    offer_id: UUID
    day: date
    used_count: int
    cap: int | None
    remaining_today: int | None


# ============================================================================
# Housekeeping Models
# ============================================================================


class ReaperRunResponse(BaseModel):
    """POST /v1/admin/reaper/run response."""

    expired_tokens: int
    pruned_counters: int
    ran_at: str


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
