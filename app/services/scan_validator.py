"""
Scan Validator - consume a scanned token exactly once.

The token row is locked (SELECT FOR UPDATE) for the whole check-then-consume
sequence. Two scanners presenting the same code serialize on that lock; the
second one reads the committed `consumed` status and is told `already_used`.

Rejected scans change nothing except the lazy expiry transition, so every
path commits: that writes the audit row and releases the lock.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import RedemptionToken, ScanAttempt, utc_now
from app.exceptions import DatabaseError, DataIntegrityError
from app.models.api import RejectReason, ScanOutcome, TokenStatus
from app.models.domain import TERMINAL_STATUS_REASONS, ScanResult
from app.observability.tracing import trace_operation
from app.services.offer_cap import OfferCapCounter, local_day
from app.services.offer_directory import OfferDirectory
from app.services.token_codec import TokenCodec

logger = get_logger(__name__)


class ScanValidator:
    """Validate and consume scanned redemption tokens."""

    def __init__(self, session: AsyncSession, codec: TokenCodec | None = None) -> None:
        self.session = session
        self.codec = codec or TokenCodec(settings.token_signing_secret)
        self.directory = OfferDirectory(session)
        self.counter = OfferCapCounter(session)

    async def validate(self, token_value: str, scanning_merchant_id: UUID) -> ScanResult:
        """
        Classify a scan and consume the token when it is accepted.

        Raises:
            DatabaseError: Storage failure; the transaction was rolled back
            DataIntegrityError: Token row holds a status outside the lifecycle
        """
        with trace_operation("scan_validate", merchant_id=str(scanning_merchant_id)):
            try:
                result = await self._validate(token_value, scanning_merchant_id)
                self._record_attempt(result, scanning_merchant_id)
                await self.session.commit()
            except DataIntegrityError:
                await self.session.rollback()
                raise
            except SQLAlchemyError as exc:
                await self.session.rollback()
                logger.error(
                    "scan_validation_failed",
                    merchant_id=str(scanning_merchant_id),
                    error=str(exc),
                )
                raise DatabaseError(str(exc)) from exc

        logger.info(
            "scan_validated",
            token_id=result.token_id[:8] if result.token_id else None,
            merchant_id=str(scanning_merchant_id),
            outcome=result.outcome.value,
            reason=result.reason.value if result.reason else None,
            used_today=result.used_today,
        )
        return result

    async def _validate(self, token_value: str, scanning_merchant_id: UUID) -> ScanResult:
        token_id = self.codec.decode(token_value)
        if token_id is None:
            return ScanResult.rejected(RejectReason.UNKNOWN_TOKEN)

        token = await self._lock_token(token_id)
        if token is None:
            return ScanResult.rejected(RejectReason.UNKNOWN_TOKEN, token_id=token_id)

        try:
            status = TokenStatus(token.status)
        except ValueError as exc:
            raise DataIntegrityError(
                f"Token {token_id[:8]}... has status {token.status!r}"
            ) from exc

        if status != TokenStatus.ACTIVE:
            return ScanResult.rejected(
                TERMINAL_STATUS_REASONS[status], token_id=token_id, offer_id=token.offer_id
            )

        now = utc_now()
        if now > token.expires_at:
            self._expire(token, now)
            return ScanResult.rejected(
                RejectReason.EXPIRED, token_id=token_id, offer_id=token.offer_id
            )

        if token.merchant_id != scanning_merchant_id:
            return ScanResult.rejected(
                RejectReason.MERCHANT_MISMATCH, token_id=token_id, offer_id=token.offer_id
            )

        offer = await self.directory.get_offer(token.offer_id)
        cap = offer.per_day_cap if offer else None
        day = local_day(now, offer.timezone if offer else None)

        increment = await self.counter.try_increment(token.offer_id, day, cap)
        if not increment.ok:
            return ScanResult.rejected(
                RejectReason.CAP_REACHED, token_id=token_id, offer_id=token.offer_id
            )

        token.status = TokenStatus.CONSUMED.value
        token.consumed_at = now
        token.consumed_by_merchant_id = scanning_merchant_id
        await self.session.flush()

        return ScanResult(
            outcome=ScanOutcome.ACCEPTED,
            token_id=token_id,
            offer_id=token.offer_id,
            used_today=increment.used_after,
        )

    async def _lock_token(self, token_id: str) -> RedemptionToken | None:
        """Lock the token row for the rest of the transaction (SELECT FOR UPDATE)."""
        stmt = select(RedemptionToken).where(RedemptionToken.id == token_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _expire(self, token: RedemptionToken, now: datetime) -> None:
        token.status = TokenStatus.EXPIRED.value
        token.expired_at = now

    def _record_attempt(self, result: ScanResult, scanning_merchant_id: UUID) -> None:
        """Audit log entry, committed with the validation."""
        self.session.add(
            ScanAttempt(
                token_id=result.token_id,
                scanning_merchant_id=scanning_merchant_id,
                outcome=result.outcome.value,
                reason=result.reason.value if result.reason else None,
            )
        )
