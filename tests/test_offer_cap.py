"""
Tests for OfferCapCounter and local day resolution.
"""

from datetime import UTC, date, datetime
from unittest.mock import AsyncMock
from uuid import UUID

from sqlalchemy.dialects import postgresql

from app.services.offer_cap import OfferCapCounter, local_day

DAY = date(2024, 1, 15)


def compiled(statement) -> str:
    return str(statement.compile(dialect=postgresql.dialect()))


class TestLocalDay:
    """Tests for merchant-local day boundaries."""

    def test_utc_default(self) -> None:
        now = datetime(2024, 1, 15, 23, 30, tzinfo=UTC)
        assert local_day(now) == date(2024, 1, 15)

    def test_offer_zone_ahead_of_utc_rolls_over_early(self) -> None:
        # 23:30 UTC is already the next morning in Tokyo
        now = datetime(2024, 1, 15, 23, 30, tzinfo=UTC)
        assert local_day(now, "Asia/Tokyo") == date(2024, 1, 16)

    def test_offer_zone_behind_utc(self) -> None:
        # 02:00 UTC is still the previous evening in New York
        now = datetime(2024, 1, 16, 2, 0, tzinfo=UTC)
        assert local_day(now, "America/New_York") == date(2024, 1, 15)

    def test_unknown_zone_falls_back_to_default(self) -> None:
        now = datetime(2024, 1, 15, 23, 30, tzinfo=UTC)
        assert local_day(now, "Not/AZone") == date(2024, 1, 15)


class TestTryIncrement:
    """Tests for the conditional daily increment."""

    async def test_increment_under_cap(
        self, db_session: AsyncMock, result_factory, offer_id: UUID
    ) -> None:
        db_session.execute = AsyncMock(side_effect=[result_factory(), result_factory(scalar=3)])

        result = await OfferCapCounter(db_session).try_increment(offer_id, DAY, cap=5)

        assert result.ok is True
        assert result.used_after == 3

    async def test_cap_reached_reports_current_count(
        self, db_session: AsyncMock, result_factory, offer_id: UUID
    ) -> None:
        db_session.execute = AsyncMock(
            side_effect=[result_factory(), result_factory(scalar=None), result_factory(scalar=5)]
        )

        result = await OfferCapCounter(db_session).try_increment(offer_id, DAY, cap=5)

        assert result.ok is False
        assert result.used_after == 5

    async def test_cap_zero_always_rejects(
        self, db_session: AsyncMock, result_factory, offer_id: UUID
    ) -> None:
        db_session.execute = AsyncMock(
            side_effect=[result_factory(), result_factory(scalar=None), result_factory(scalar=0)]
        )

        result = await OfferCapCounter(db_session).try_increment(offer_id, DAY, cap=0)

        assert result.ok is False
        assert result.used_after == 0

    async def test_capped_update_guards_used_count(
        self, db_session: AsyncMock, result_factory, offer_id: UUID
    ) -> None:
        db_session.execute = AsyncMock(side_effect=[result_factory(), result_factory(scalar=1)])

        await OfferCapCounter(db_session).try_increment(offer_id, DAY, cap=5)

        insert_sql = compiled(db_session.execute.call_args_list[0].args[0])
        update_sql = compiled(db_session.execute.call_args_list[1].args[0])
        assert "ON CONFLICT (offer_id, day) DO NOTHING" in insert_sql
        assert "offer_daily_counters.used_count <" in update_sql
        assert "RETURNING offer_daily_counters.used_count" in update_sql

    async def test_uncapped_update_has_no_ceiling(
        self, db_session: AsyncMock, result_factory, offer_id: UUID
    ) -> None:
        db_session.execute = AsyncMock(side_effect=[result_factory(), result_factory(scalar=42)])

        result = await OfferCapCounter(db_session).try_increment(offer_id, DAY, cap=None)

        update_sql = compiled(db_session.execute.call_args_list[1].args[0])
        assert "offer_daily_counters.used_count <" not in update_sql
        assert result.ok is True
        assert result.used_after == 42

    async def test_increment_never_commits(
        self, db_session: AsyncMock, result_factory, offer_id: UUID
    ) -> None:
        db_session.execute = AsyncMock(side_effect=[result_factory(), result_factory(scalar=1)])

        await OfferCapCounter(db_session).try_increment(offer_id, DAY, cap=5)

        db_session.commit.assert_not_called()


class TestGetUsage:
    """Tests for reading a day's usage."""

    async def test_usage_with_cap(
        self, db_session: AsyncMock, result_factory, offer_id: UUID
    ) -> None:
        db_session.execute = AsyncMock(return_value=result_factory(scalar=3))

        usage = await OfferCapCounter(db_session).get_usage(offer_id, DAY, cap=5)

        assert usage.used_count == 3
        assert usage.remaining_today == 2
        assert usage.day == DAY

    async def test_usage_without_row_is_zero(self, db_session: AsyncMock, offer_id: UUID) -> None:
        usage = await OfferCapCounter(db_session).get_usage(offer_id, DAY, cap=None)

        assert usage.used_count == 0
        assert usage.remaining_today is None
