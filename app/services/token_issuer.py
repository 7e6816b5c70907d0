"""
Token Issuer - mint a redemption token for a user/offer/merchant triple.

Issuance is one transaction:
1. Offer must exist, be active, and belong to the requested merchant
2. Reserve one free redemption (conditional UPDATE on the user's quota row)
3. Supersede the user's previous active token for this offer
4. Insert the new token and verify the write
5. Commit

Steps 1-2 run before any mutation. Any later failure rolls the whole
transaction back, so quota is never debited without a token.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import Settings, settings as default_settings
from app.db.models import RedemptionToken, utc_now
from app.exceptions import ConcurrencyError, DatabaseError, WriteVerificationError
from app.models.api import IssueFailure, TokenStatus
from app.models.domain import IssuedToken, IssueRejected, IssueResult, RedemptionRequest
from app.observability.tracing import trace_operation
from app.services.offer_directory import OfferDirectory
from app.services.quota_ledger import QuotaLedger
from app.services.token_codec import TokenCodec

logger = get_logger(__name__)


class TokenIssuer:
    """Mint tokens with quota reservation and supersession in one transaction."""

    def __init__(
        self,
        session: AsyncSession,
        codec: TokenCodec | None = None,
        config: Settings | None = None,
    ) -> None:
        self.session = session
        self.config = config or default_settings
        self.codec = codec or TokenCodec(self.config.token_signing_secret)
        self.directory = OfferDirectory(session)
        self.ledger = QuotaLedger(session, self.config.free_redemptions_per_user)

    async def issue(self, request: RedemptionRequest) -> IssueResult:
        """
        Issue a token, or return why not.

        Raises:
            ConcurrencyError: A competing issuance won the active-token slot
            DatabaseError: Storage failure; nothing was written
            WriteVerificationError: Token not readable after insert
        """
        with trace_operation(
            "token_issue",
            user_id=request.user_id,
            offer_id=str(request.offer_id),
        ):
            try:
                return await self._issue(request)
            except IntegrityError as exc:
                await self.session.rollback()
                logger.warning(
                    "token_issue_conflict",
                    user_id=request.user_id,
                    offer_id=str(request.offer_id),
                    error=str(exc),
                )
                raise ConcurrencyError(
                    f"active token for {request.user_id}/{request.offer_id}"
                ) from exc
            except WriteVerificationError:
                await self.session.rollback()
                raise
            except SQLAlchemyError as exc:
                await self.session.rollback()
                logger.error(
                    "token_issue_failed",
                    user_id=request.user_id,
                    offer_id=str(request.offer_id),
                    error=str(exc),
                )
                raise DatabaseError(str(exc)) from exc

    async def _issue(self, request: RedemptionRequest) -> IssueResult:
        offer = await self.directory.get_offer(request.offer_id)
        if offer is None:
            return await self._reject(request, IssueFailure.OFFER_NOT_FOUND)
        if not offer.active:
            return await self._reject(request, IssueFailure.OFFER_INACTIVE)
        if offer.merchant_id != request.merchant_id:
            return await self._reject(request, IssueFailure.MERCHANT_MISMATCH)

        ttl_seconds = self.config.clamp_ttl(request.ttl_seconds)
        if request.ttl_seconds is not None and ttl_seconds != request.ttl_seconds:
            logger.info(
                "token_ttl_clamped",
                user_id=request.user_id,
                requested=request.ttl_seconds,
                applied=ttl_seconds,
            )

        reservation = await self.ledger.check_and_reserve(request.user_id)
        if not reservation.ok:
            return await self._reject(request, IssueFailure.QUOTA_EXHAUSTED, remaining=0)

        now = utc_now()
        token_id, wire_value = self.codec.mint()

        superseded_id = await self._supersede_active(request, token_id, now)

        token = RedemptionToken(
            id=token_id,
            user_id=request.user_id,
            offer_id=request.offer_id,
            merchant_id=request.merchant_id,
            device_tag=request.device_tag,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            ttl_seconds=ttl_seconds,
            status=TokenStatus.ACTIVE.value,
        )
        self.session.add(token)
        await self.session.flush()

        # Verify token was written
        verified = await self.session.get(RedemptionToken, token_id)
        if verified is None:
            raise WriteVerificationError(f"Token {token_id[:8]}... not found after insert")

        await self.session.commit()

        logger.info(
            "redemption_token_issued",
            token_id=token_id[:8],
            user_id=request.user_id,
            offer_id=str(request.offer_id),
            merchant_id=str(request.merchant_id),
            device_tag=request.device_tag,
            ttl_seconds=ttl_seconds,
            remaining_after=reservation.remaining_after,
            superseded=superseded_id is not None,
        )

        return IssuedToken(
            token=wire_value,
            token_id=token_id,
            user_id=request.user_id,
            offer_id=verified.offer_id,
            merchant_id=verified.merchant_id,
            issued_at=verified.issued_at,
            expires_at=verified.expires_at,
            ttl_seconds=ttl_seconds,
            remaining_after=reservation.remaining_after,
            superseded_token_id=superseded_id,
        )

    async def _supersede_active(
        self, request: RedemptionRequest, replacement_id: str, now: datetime
    ) -> str | None:
        """Move the pair's active token (if any) to superseded."""
        stmt = (
            update(RedemptionToken)
            .where(
                RedemptionToken.user_id == request.user_id,
                RedemptionToken.offer_id == request.offer_id,
                RedemptionToken.status == TokenStatus.ACTIVE.value,
            )
            .values(
                status=TokenStatus.SUPERSEDED.value,
                superseded_at=now,
                superseded_by=replacement_id,
            )
            .returning(RedemptionToken.id)
        )
        result = await self.session.execute(stmt)
        superseded = result.scalars().all()
        if len(superseded) > 1:
            # Unique partial index makes this unreachable; log loudly if it ever is
            logger.error(
                "multiple_active_tokens_superseded",
                user_id=request.user_id,
                offer_id=str(request.offer_id),
                count=len(superseded),
            )
        return superseded[0] if superseded else None

    async def _reject(
        self,
        request: RedemptionRequest,
        reason: IssueFailure,
        remaining: int | None = None,
    ) -> IssueRejected:
        await self.session.rollback()
        logger.info(
            "redemption_token_rejected",
            user_id=request.user_id,
            offer_id=str(request.offer_id),
            reason=reason.value,
        )
        return IssueRejected(reason=reason, remaining=remaining)
