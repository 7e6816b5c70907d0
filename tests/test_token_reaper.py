"""
Tests for TokenReaper.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from app.exceptions import DatabaseError
from app.services.token_reaper import TokenReaper, run_reaper_loop

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


def compiled(statement) -> str:
    return str(statement.compile(dialect=postgresql.dialect()))


@pytest.fixture
def reaper_session(db_session: AsyncMock, result_factory) -> AsyncMock:
    """Two stale tokens expired and three old counters pruned."""
    db_session.execute = AsyncMock(
        side_effect=[
            result_factory(scalars=["tok-a", "tok-b"]),
            result_factory(rowcount=3),
        ]
    )
    return db_session


class TestRunOnce:
    """Tests for a single housekeeping pass."""

    async def test_pass_reports_and_commits(self, reaper_session: AsyncMock) -> None:
        report = await TokenReaper(reaper_session, retention_days=30).run_once(now=NOW)

        assert report.expired_tokens == 2
        assert report.pruned_counters == 3
        assert report.ran_at == NOW
        reaper_session.commit.assert_awaited_once()
        reaper_session.rollback.assert_not_called()

    async def test_expire_only_touches_active_tokens_past_expiry(
        self, reaper_session: AsyncMock
    ) -> None:
        await TokenReaper(reaper_session).run_once(now=NOW)

        sql = compiled(reaper_session.execute.call_args_list[0].args[0])
        assert sql.startswith("UPDATE redemption_tokens SET status=")
        assert "redemption_tokens.status =" in sql
        assert "redemption_tokens.expires_at <" in sql

    async def test_prune_uses_retention_cutoff(self, reaper_session: AsyncMock) -> None:
        await TokenReaper(reaper_session, retention_days=7).run_once(now=NOW)

        stmt = reaper_session.execute.call_args_list[1].args[0]
        assert compiled(stmt).startswith("DELETE FROM offer_daily_counters")
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert params["day_1"] == datetime(2024, 1, 8).date()

    async def test_dry_run_rolls_back(self, reaper_session: AsyncMock) -> None:
        with patch("app.services.token_reaper.metrics", MagicMock()) as mock_metrics:
            report = await TokenReaper(reaper_session).run_once(now=NOW, dry_run=True)

        assert report.expired_tokens == 2
        reaper_session.rollback.assert_awaited_once()
        reaper_session.commit.assert_not_called()
        mock_metrics.record_reaper_pass.assert_not_called()

    async def test_real_pass_records_metrics(self, reaper_session: AsyncMock) -> None:
        with patch("app.services.token_reaper.metrics", MagicMock()) as mock_metrics:
            await TokenReaper(reaper_session).run_once(now=NOW)

        mock_metrics.record_reaper_pass.assert_called_once_with(2, 3)

    async def test_nothing_to_do(self, db_session: AsyncMock) -> None:
        report = await TokenReaper(db_session).run_once(now=NOW)

        assert report.expired_tokens == 0
        assert report.pruned_counters == 0

    async def test_database_error_rolls_back(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(
            side_effect=OperationalError("UPDATE", {}, Exception("connection reset"))
        )

        with pytest.raises(DatabaseError):
            await TokenReaper(db_session).run_once(now=NOW)

        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_called()


class TestReaperLoop:
    """Tests for the background housekeeping loop."""

    async def test_loop_survives_failed_passes(self, db_session: AsyncMock) -> None:
        @asynccontextmanager
        async def write_session():
            yield db_session

        run_once = AsyncMock(
            side_effect=[OSError("connection refused"), DatabaseError("down"), MagicMock()]
        )
        loop_asyncio = MagicMock()
        loop_asyncio.sleep = AsyncMock(side_effect=[None, None, asyncio.CancelledError()])

        with (
            patch("app.db.session.get_write_session", write_session),
            patch.object(TokenReaper, "run_once", run_once),
            patch("app.services.token_reaper.asyncio", loop_asyncio),
            patch("app.services.token_reaper.metrics") as mock_metrics,
        ):
            with pytest.raises(asyncio.CancelledError):
                await run_reaper_loop(interval_seconds=5)

        assert run_once.await_count == 3
        loop_asyncio.sleep.assert_awaited_with(5)
        mock_metrics.record_error.assert_called_once_with("OSError", "token_reaper")
