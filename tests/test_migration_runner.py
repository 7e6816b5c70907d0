"""
Tests for the migration runner.

Alembic and the engine are patched; no database is touched.
"""

from unittest.mock import MagicMock, patch

import pytest

from app.db import migration_runner
from app.db.migration_runner import MigrationStatus, run_migrations, sync_database_url


class TestSyncDatabaseUrl:
    def test_asyncpg_becomes_psycopg2(self):
        url = "postgresql+asyncpg://u:p@db:5432/redemption"
        assert sync_database_url(url) == "postgresql+psycopg2://u:p@db:5432/redemption"

    def test_defaults_to_settings(self):
        assert "psycopg2" in sync_database_url()


class TestMigrationStatus:
    def test_pending(self):
        assert MigrationStatus(current_revision=None, head_revision="0001").pending is True
        assert MigrationStatus(current_revision="0001", head_revision="0001").pending is False


class TestRunMigrations:
    """Tests for run_migrations."""

    @pytest.fixture
    def engine(self):
        with patch.object(migration_runner, "create_engine") as create_engine:
            yield create_engine.return_value

    def test_upgrades_when_behind(self, engine: MagicMock):
        with (
            patch.object(migration_runner, "_get_current_revision", return_value=None),
            patch.object(migration_runner, "_get_head_revision", return_value="0001"),
            patch.object(migration_runner.command, "upgrade") as upgrade,
        ):
            run_migrations()

        upgrade.assert_called_once()
        assert upgrade.call_args.args[1] == "head"
        engine.dispose.assert_called_once()

    def test_skips_when_current(self, engine: MagicMock):
        with (
            patch.object(migration_runner, "_get_current_revision", return_value="0001"),
            patch.object(migration_runner, "_get_head_revision", return_value="0001"),
            patch.object(migration_runner.command, "upgrade") as upgrade,
        ):
            run_migrations()

        upgrade.assert_not_called()

    def test_failure_is_runtime_error(self, engine: MagicMock):
        with (
            patch.object(migration_runner, "_get_current_revision", return_value=None),
            patch.object(migration_runner, "_get_head_revision", return_value="0001"),
            patch.object(
                migration_runner.command, "upgrade", side_effect=Exception("syntax error")
            ),
            pytest.raises(RuntimeError, match="Database migration failed"),
        ):
            run_migrations()

        engine.dispose.assert_called_once()
