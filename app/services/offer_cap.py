"""
Offer Cap Counter - per-offer, per-day redemption ceiling.

This is the main contention point: many scanners redeeming one popular offer
at once. The check and the increment are one conditional UPDATE, so
used_count cannot pass the cap however many callers race for the last slot.
"""

from datetime import date, datetime
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import OfferDailyCounter, utc_now
from app.models.domain import IncrementResult, OfferUsage

logger = get_logger(__name__)


def local_day(now: datetime, timezone: str | None = None) -> date:
    """
    Merchant-local calendar day for `now`.

    Falls back to the configured default zone when the offer has none or
    names an unknown one.
    """
    zone_name = timezone or settings.default_timezone
    try:
        zone = ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_offer_timezone", timezone=zone_name)
        zone = ZoneInfo(settings.default_timezone)
    return now.astimezone(zone).date()


class OfferCapCounter:
    """Increment and read per-day offer redemption counters."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def try_increment(self, offer_id: UUID, day: date, cap: int | None) -> IncrementResult:
        """
        Atomically count one redemption against the offer's daily cap.

        cap=None means no ceiling. On failure the row is left untouched and
        used_after reports the current count. Runs inside the caller's
        transaction.
        """
        await self._ensure_counter(offer_id, day, cap)

        conditions = [OfferDailyCounter.offer_id == offer_id, OfferDailyCounter.day == day]
        if cap is not None:
            conditions.append(OfferDailyCounter.used_count < cap)

        stmt = (
            update(OfferDailyCounter)
            .where(*conditions)
            .values(
                used_count=OfferDailyCounter.used_count + 1,
                cap=cap,
                updated_at=utc_now(),
            )
            .returning(OfferDailyCounter.used_count)
        )
        result = await self.session.execute(stmt)
        used_after = result.scalar_one_or_none()

        if used_after is None:
            current = await self._read_used_count(offer_id, day)
            logger.info(
                "offer_cap_reached",
                offer_id=str(offer_id),
                day=day.isoformat(),
                cap=cap,
                used_count=current,
            )
            return IncrementResult(ok=False, used_after=current)

        return IncrementResult(ok=True, used_after=used_after)

    async def get_usage(self, offer_id: UUID, day: date, cap: int | None) -> OfferUsage:
        """Read how many redemptions the offer has had on `day`."""
        used = await self._read_used_count(offer_id, day)
        return OfferUsage(offer_id=offer_id, day=day, used_count=used, cap=cap)

    async def _ensure_counter(self, offer_id: UUID, day: date, cap: int | None) -> None:
        """Create today's counter row if this is the first attempt of the day."""
        stmt = (
            pg_insert(OfferDailyCounter)
            .values(offer_id=offer_id, day=day, used_count=0, cap=cap)
            .on_conflict_do_nothing(
                index_elements=[OfferDailyCounter.offer_id, OfferDailyCounter.day]
            )
        )
        await self.session.execute(stmt)

    async def _read_used_count(self, offer_id: UUID, day: date) -> int:
        stmt = select(OfferDailyCounter.used_count).where(
            OfferDailyCounter.offer_id == offer_id,
            OfferDailyCounter.day == day,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() or 0
