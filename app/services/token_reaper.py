"""
Token Reaper - housekeeping for stale tokens and old counters.

Validation checks expiry itself, so nothing here is needed for correctness.
The reaper keeps token status accurate for reporting and keeps the counter
table small.
"""

import asyncio
from datetime import datetime, timedelta

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import OfferDailyCounter, RedemptionToken, utc_now
from app.exceptions import DatabaseError
from app.models.api import TokenStatus
from app.models.domain import ReaperReport
from app.observability.metrics import metrics

logger = get_logger(__name__)


class TokenReaper:
    """
    Mark expired tokens and prune old daily counters.

    Usage:
        async with get_write_session() as session:
            report = await TokenReaper(session).run_once()
    """

    def __init__(self, session: AsyncSession, retention_days: int | None = None) -> None:
        self.session = session
        self.retention_days = (
            settings.counter_retention_days if retention_days is None else retention_days
        )

    async def expire_stale_tokens(self, now: datetime) -> int:
        """Move active tokens past their expiry to expired. Returns the count."""
        stmt = (
            update(RedemptionToken)
            .where(
                RedemptionToken.status == TokenStatus.ACTIVE.value,
                RedemptionToken.expires_at < now,
            )
            .values(status=TokenStatus.EXPIRED.value, expired_at=now)
            .returning(RedemptionToken.id)
        )
        result = await self.session.execute(stmt)
        return len(result.scalars().all())

    async def prune_counters(self, now: datetime) -> int:
        """Delete daily counters older than the retention window."""
        cutoff = (now - timedelta(days=self.retention_days)).date()
        stmt = delete(OfferDailyCounter).where(OfferDailyCounter.day < cutoff)
        result = await self.session.execute(stmt)
        return result.rowcount if result.rowcount else 0  # type: ignore[attr-defined]

    async def run_once(self, now: datetime | None = None, dry_run: bool = False) -> ReaperReport:
        """
        One housekeeping pass, committed as a single transaction.

        With dry_run the same statements run and are rolled back, so the
        report shows what a real pass would change.

        Raises:
            DatabaseError: Storage failure; nothing was changed
        """
        now = now or utc_now()
        try:
            expired = await self.expire_stale_tokens(now)
            pruned = await self.prune_counters(now)
            if dry_run:
                await self.session.rollback()
            else:
                await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("token_reaper_failed", error=str(exc))
            raise DatabaseError(str(exc)) from exc

        if not dry_run:
            metrics.record_reaper_pass(expired, pruned)

        if expired or pruned or dry_run:
            logger.info(
                "token_reaper_pass",
                expired_tokens=expired,
                pruned_counters=pruned,
                dry_run=dry_run,
            )

        return ReaperReport(expired_tokens=expired, pruned_counters=pruned, ran_at=now)


async def run_reaper_loop(interval_seconds: float | None = None) -> None:
    """
    Run housekeeping forever, one pass per interval.

    Started as a background task by the application lifespan. Failures are
    logged and the loop carries on with the next pass.
    """
    from app.db.session import get_write_session

    interval = interval_seconds or settings.reaper_interval_seconds
    logger.info("token_reaper_started", interval_seconds=interval)

    while True:
        try:
            async with get_write_session() as session:
                await TokenReaper(session).run_once()
        except DatabaseError as exc:
            logger.warning("token_reaper_pass_skipped", error=exc.message)
        except Exception as exc:
            metrics.record_error(type(exc).__name__, "token_reaper")
            logger.error("token_reaper_pass_failed", error=str(exc), exc_info=True)
        await asyncio.sleep(interval)
