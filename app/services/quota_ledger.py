"""
Quota Ledger - per-user free redemption allowance.

Each mutation is a single conditional UPDATE keyed by user_id, so concurrent
reservations for the same user serialize on the row lock and `remaining`
can never go below zero. The ledger participates in the caller's
transaction and never commits on its own.
"""

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import QuotaRecord, utc_now
from app.models.domain import ReserveResult

logger = get_logger(__name__)


class QuotaLedger:
    """Read and reserve free redemptions for a user."""

    def __init__(self, session: AsyncSession, starting_balance: int | None = None) -> None:
        self.session = session
        self.starting_balance = (
            settings.free_redemptions_per_user if starting_balance is None else starting_balance
        )

    async def check_and_reserve(self, user_id: str) -> ReserveResult:
        """
        Atomically take one free redemption from the user's allowance.

        Returns ok=False with state unchanged when nothing is left.
        Exhaustion is terminal; callers must not retry.
        """
        await self._ensure_record(user_id)

        stmt = (
            update(QuotaRecord)
            .where(QuotaRecord.user_id == user_id, QuotaRecord.remaining > 0)
            .values(remaining=QuotaRecord.remaining - 1, updated_at=utc_now())
            .returning(QuotaRecord.remaining)
        )
        result = await self.session.execute(stmt)
        remaining_after = result.scalar_one_or_none()

        if remaining_after is None:
            logger.info("quota_exhausted", user_id=user_id)
            return ReserveResult(ok=False, remaining_after=0)

        logger.debug("quota_reserved", user_id=user_id, remaining_after=remaining_after)
        return ReserveResult(ok=True, remaining_after=remaining_after)

    async def peek_remaining(self, user_id: str) -> int:
        """
        Non-mutating read of the user's remaining allowance.

        Users with no record yet report the configured starting balance.
        """
        stmt = select(QuotaRecord.remaining).where(QuotaRecord.user_id == user_id)
        result = await self.session.execute(stmt)
        remaining = result.scalar_one_or_none()
        if remaining is None:
            return self.starting_balance
        return remaining

    async def _ensure_record(self, user_id: str) -> None:
        """Create the user's record with the starting balance if missing."""
        stmt = (
            pg_insert(QuotaRecord)
            .values(
                user_id=user_id,
                remaining=self.starting_balance,
                granted_total=self.starting_balance,
            )
            .on_conflict_do_nothing(index_elements=[QuotaRecord.user_id])
        )
        await self.session.execute(stmt)
