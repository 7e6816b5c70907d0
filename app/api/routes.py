"""
API Routes - FastAPI endpoints for redemption operations.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import time
from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    CallerIdentity,
    MerchantIdentity,
    get_caller,
    require_admin,
    require_merchant,
)
from app.db.session import get_read_db, get_write_db
from app.exceptions import (
    ConcurrencyError,
    DatabaseError,
    DataIntegrityError,
    WriteVerificationError,
)
from app.models.api import (
    HealthResponse,
    IssueFailure,
    IssueTokenRequest,
    IssueTokenResponse,
    OfferUsageResponse,
    QuotaResponse,
    ReaperRunResponse,
    ValidateScanRequest,
    ValidateScanResponse,
)
from app.models.domain import IssueRejected, RedemptionRequest
from app.observability import metrics
from app.services.offer_cap import OfferCapCounter, local_day
from app.services.offer_directory import OfferDirectory
from app.services.quota_ledger import QuotaLedger
from app.services.scan_validator import ScanValidator
from app.services.token_issuer import TokenIssuer
from app.services.token_reaper import TokenReaper

logger = get_logger(__name__)

router = APIRouter()

# Seconds a client should wait before retrying a conflicting issuance
CONFLICT_RETRY_AFTER_SECONDS = 1

ISSUE_FAILURE_STATUS: dict[IssueFailure, int] = {
    IssueFailure.QUOTA_EXHAUSTED: status.HTTP_402_PAYMENT_REQUIRED,
    IssueFailure.OFFER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    IssueFailure.OFFER_INACTIVE: status.HTTP_409_CONFLICT,
    IssueFailure.MERCHANT_MISMATCH: status.HTTP_409_CONFLICT,
}


def _unavailable(exc: Exception, operation: str) -> HTTPException:
    metrics.record_error(type(exc).__name__, operation)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Database unavailable",
    )


@router.post(
    "/v1/redemptions/tokens",
    response_model=IssueTokenResponse,
    status_code=status.HTTP_201_CREATED,
)
async def issue_token(
    request: IssueTokenRequest,
    db: AsyncSession = Depends(get_write_db),
    caller: CallerIdentity = Depends(get_caller),
) -> IssueTokenResponse:
    """
    Issue a redemption token for the caller.

    Consumes one free redemption and supersedes the caller's previous
    active token for the same offer.
    Write operation - requires primary database.

    Auth: Bearer {jwt} (consumer)
    """
    intent = RedemptionRequest(
        user_id=caller.user_id,
        offer_id=request.offer_id,
        merchant_id=request.merchant_id,
        device_tag=request.device_tag,
        ttl_seconds=request.ttl_seconds,
    )

    start_time = time.time()
    try:
        result = await TokenIssuer(db).issue(intent)

    except ConcurrencyError as exc:
        metrics.record_error(type(exc).__name__, "token_issue")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Concurrent issuance in progress, retry",
            headers={"Retry-After": str(CONFLICT_RETRY_AFTER_SECONDS)},
        ) from exc

    except (WriteVerificationError, DataIntegrityError) as exc:
        metrics.record_error(type(exc).__name__, "token_issue")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    except DatabaseError as exc:
        raise _unavailable(exc, "token_issue") from exc

    duration = time.time() - start_time

    if isinstance(result, IssueRejected):
        metrics.record_issue(result.reason.value, superseded=False, duration=duration)
        raise HTTPException(
            status_code=ISSUE_FAILURE_STATUS[result.reason],
            detail=result.reason.value,
        )

    metrics.record_issue(
        None, superseded=result.superseded_token_id is not None, duration=duration
    )

    return IssueTokenResponse(
        token=result.token,
        token_id=result.token_id,
        offer_id=result.offer_id,
        merchant_id=result.merchant_id,
        issued_at=result.issued_at.isoformat(),
        expires_at=result.expires_at.isoformat(),
        ttl_seconds=result.ttl_seconds,
        free_remaining=result.remaining_after,
        superseded_token_id=result.superseded_token_id,
    )


@router.get("/v1/redemptions/quota", response_model=QuotaResponse)
async def get_quota(
    db: AsyncSession = Depends(get_read_db),
    caller: CallerIdentity = Depends(get_caller),
) -> QuotaResponse:
    """
    Free redemptions left for the caller.

    Read-only; callers that have never issued see the starting allowance.

    Auth: Bearer {jwt} (consumer)
    """
    try:
        remaining = await QuotaLedger(db).peek_remaining(caller.user_id)
    except SQLAlchemyError as exc:
        raise _unavailable(exc, "quota_peek") from exc

    return QuotaResponse(remaining=remaining)


@router.post("/v1/redemptions/scans", response_model=ValidateScanResponse)
async def validate_scan(
    request: ValidateScanRequest,
    db: AsyncSession = Depends(get_write_db),
    merchant: MerchantIdentity = Depends(require_merchant),
) -> ValidateScanResponse:
    """
    Validate a scanned code at the merchant's counter.

    Always 200 for a classified scan; the outcome and reason say whether the
    redemption went through.
    Write operation - requires primary database.

    Auth: Bearer {jwt} with merchant_id claim
    """
    start_time = time.time()
    try:
        result = await ScanValidator(db).validate(request.token, merchant.merchant_id)

    except DataIntegrityError as exc:
        metrics.record_error(type(exc).__name__, "scan_validate")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    except DatabaseError as exc:
        raise _unavailable(exc, "scan_validate") from exc

    metrics.record_scan(
        result.outcome.value,
        result.reason.value if result.reason else None,
        time.time() - start_time,
    )

    return ValidateScanResponse(
        outcome=result.outcome,
        reason=result.reason,
        offer_id=result.offer_id,
        used_today=result.used_today,
    )


@router.get("/v1/offers/{offer_id}/usage", response_model=OfferUsageResponse)
async def get_offer_usage(
    offer_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    caller: CallerIdentity = Depends(get_caller),
) -> OfferUsageResponse:
    """
    Today's redemptions for an offer against its daily cap.

    "Today" is the offer's local day.

    Auth: Bearer {jwt}
    """
    try:
        offer = await OfferDirectory(db).get_offer(offer_id)
        if offer is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=IssueFailure.OFFER_NOT_FOUND.value,
            )

        day = local_day(datetime.now(UTC), offer.timezone)
        usage = await OfferCapCounter(db).get_usage(offer_id, day, offer.per_day_cap)
    except SQLAlchemyError as exc:
        raise _unavailable(exc, "offer_usage") from exc

    return OfferUsageResponse(
        offer_id=usage.offer_id,
        day=usage.day,
        used_count=usage.used_count,
        cap=usage.cap,
        remaining_today=usage.remaining_today,
    )


@router.post("/v1/admin/reaper/run", response_model=ReaperRunResponse)
async def run_reaper(
    db: AsyncSession = Depends(get_write_db),
    caller: CallerIdentity = Depends(require_admin),
) -> ReaperRunResponse:
    """
    Run one housekeeping pass now.

    Auth: Bearer {jwt} with admin role
    """
    try:
        report = await TokenReaper(db).run_once()
    except DatabaseError as exc:
        raise _unavailable(exc, "token_reaper") from exc

    logger.info(
        "token_reaper_manual_run",
        admin=caller.user_id,
        expired_tokens=report.expired_tokens,
        pruned_counters=report.pruned_counters,
    )

    return ReaperRunResponse(
        expired_tokens=report.expired_tokens,
        pruned_counters=report.pruned_counters,
        ran_at=report.ran_at.isoformat(),
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        # Test database connection
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
