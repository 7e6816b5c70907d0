"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import date, datetime
from uuid import UUID

from app.models.api import IssueFailure, RejectReason, ScanOutcome, TokenStatus


@dataclass(frozen=True)
class RedemptionRequest:
    """Immutable request to mint a token for a user/offer/merchant triple."""

    user_id: str
    offer_id: UUID
    merchant_id: UUID
    device_tag: str
    ttl_seconds: int | None = None

    def __post_init__(self) -> None:
        """Validate request fields."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if not self.device_tag:
            raise ValueError("device_tag cannot be empty")
        if self.ttl_seconds is not None and self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive: {self.ttl_seconds}")


@dataclass(frozen=True)
class OfferInfo:
    """Read-only view of an offer owned by the merchant directory."""

    offer_id: UUID
    merchant_id: UUID
    active: bool
    per_day_cap: int | None
    timezone: str | None = None

    def __post_init__(self) -> None:
        """Validate cap."""
        if self.per_day_cap is not None and self.per_day_cap < 0:
            raise ValueError(f"per_day_cap cannot be negative: {self.per_day_cap}")


@dataclass(frozen=True)
class ReserveResult:
    """Outcome of a quota reservation."""

    ok: bool
    remaining_after: int

    def __post_init__(self) -> None:
        """Quota never goes negative."""
        if self.remaining_after < 0:
            raise ValueError(f"remaining_after cannot be negative: {self.remaining_after}")


@dataclass(frozen=True)
class IncrementResult:
    """Outcome of a daily cap increment."""

    ok: bool
    used_after: int


@dataclass(frozen=True)
class OfferUsage:
    """Snapshot of an offer's redemptions for one merchant-local day."""

    offer_id: UUID
    day: date
    used_count: int
    cap: int | None

    @property
    def remaining_today(self) -> int | None:
        """Headroom left today, None when the offer is uncapped."""
        if self.cap is None:
            return None
        return max(0, self.cap - self.used_count)


@dataclass(frozen=True)
class IssuedToken:
    """A freshly minted, active redemption token."""

    token: str
    token_id: str
    user_id: str
    offer_id: UUID
    merchant_id: UUID
    issued_at: datetime
    expires_at: datetime
    ttl_seconds: int
    remaining_after: int
    superseded_token_id: str | None = None

    ok = True


@dataclass(frozen=True)
class IssueRejected:
    """Issuance refused for a business reason; nothing was written."""

    reason: IssueFailure
    remaining: int | None = None

    ok = False


IssueResult = IssuedToken | IssueRejected


@dataclass(frozen=True)
class ScanResult:
    """Classified result of one scan validation attempt."""

    outcome: ScanOutcome
    reason: RejectReason | None = None
    token_id: str | None = None
    offer_id: UUID | None = None
    used_today: int | None = None

    def __post_init__(self) -> None:
        """Accepted scans carry no reason; rejected scans always do."""
        if self.outcome == ScanOutcome.ACCEPTED and self.reason is not None:
            raise ValueError("accepted scan cannot carry a reason")
        if self.outcome == ScanOutcome.REJECTED and self.reason is None:
            raise ValueError("rejected scan requires a reason")

    @property
    def accepted(self) -> bool:
        """True when the token was consumed by this scan."""
        return self.outcome == ScanOutcome.ACCEPTED

    @classmethod
    def rejected(
        cls,
        reason: RejectReason,
        token_id: str | None = None,
        offer_id: UUID | None = None,
    ) -> "ScanResult":
        """Build a rejected result."""
        return cls(
            outcome=ScanOutcome.REJECTED,
            reason=reason,
            token_id=token_id,
            offer_id=offer_id,
        )


# Status -> rejection reason for tokens that already left ACTIVE
TERMINAL_STATUS_REASONS: dict[TokenStatus, RejectReason] = {
    TokenStatus.CONSUMED: RejectReason.ALREADY_USED,
    TokenStatus.SUPERSEDED: RejectReason.SUPERSEDED,
    TokenStatus.EXPIRED: RejectReason.EXPIRED,
}


@dataclass(frozen=True)
class ReaperReport:
    """Counts from one housekeeping pass."""

    expired_tokens: int
    pruned_counters: int
    ran_at: datetime
