"""
Tests for the migration runner helpers.
"""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from subscription_billing.db import migration_runner
from subscription_billing.db.migration_runner import MigrationStatus, sync_database_url


def test_sync_url_uses_psycopg2():
    url = "postgresql+asyncpg://billing:secret@db:5432/billing"

    assert sync_database_url(url) == "postgresql+psycopg2://billing:secret@db:5432/billing"


@pytest.mark.parametrize(
    ("current", "head", "pending"),
    [(None, "2026_10_19_0000", True), ("2026_10_19_0000", "2026_10_19_0000", False)],
)
def test_pending(current, head, pending):
    assert MigrationStatus(current, head).pending is pending


def test_missing_alembic_ini_skips_upgrade(tmp_path: Path):
    with (
        patch.object(migration_runner, "ALEMBIC_INI_PATH", tmp_path / "alembic.ini"),
        patch.object(migration_runner, "create_engine") as create_engine,
    ):
        migration_runner.run_migrations()

    create_engine.assert_not_called()


def test_up_to_date_schema_is_not_upgraded():
    engine = MagicMock()
    with (
        patch.object(migration_runner, "create_engine", return_value=engine),
        patch.object(migration_runner, "_get_current_revision", return_value="rev"),
        patch.object(migration_runner, "_get_head_revision", return_value="rev"),
        patch.object(migration_runner.command, "upgrade") as upgrade,
    ):
        migration_runner.run_migrations()

    upgrade.assert_not_called()
    engine.dispose.assert_called_once()


def test_failed_upgrade_raises():
    with (
        patch.object(migration_runner, "create_engine", return_value=MagicMock()),
        patch.object(migration_runner, "_get_current_revision", return_value=None),
        patch.object(migration_runner, "_get_head_revision", return_value="rev"),
        patch.object(migration_runner.command, "upgrade", side_effect=OSError("refused")),
    ):
        with pytest.raises(RuntimeError, match="Database migration failed"):
            migration_runner.run_migrations()
