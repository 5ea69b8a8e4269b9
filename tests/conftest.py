"""Shared pytest configuration.

Every test runs with a minimal valid environment, fresh settings and no
database engine. Tests that need tables request the ``db`` fixture, which
provides an in-memory SQLite database.
"""

import shutil
from pathlib import Path

import pytest

from src.database.db import close_db, create_tables, init_db
from src.tasks.payloads import AnalysisTaskPayload
from src.utils.config import reset_settings

TEST_ENV = {
    "APP_NAME": "adminer-worker-test",
    "ENVIRONMENT": "development",
    "DATABASE_URL": "sqlite://",
    "DB_RETRY_DELAY": "0.01",
}


@pytest.fixture(scope="session", autouse=True)
def backup_env_file():
    """Backup .env file during test session to prevent pollution."""
    env_file = Path(".env")
    backup_file = Path(".env.test_backup")

    # Backup if exists
    if env_file.exists():
        shutil.copy(env_file, backup_file)
        env_file.unlink()

    yield

    # Restore
    if backup_file.exists():
        shutil.move(backup_file, env_file)


@pytest.fixture(autouse=True)
def test_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Set required variables and reset settings and database state."""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("S3_DOWNLOAD_LOCATION", str(tmp_path / "downloads"))

    reset_settings()
    close_db()

    yield

    close_db()
    reset_settings()


@pytest.fixture
def db():
    """In-memory SQLite database with all tables created."""
    init_db("sqlite://")
    create_tables()
    yield
    close_db()


@pytest.fixture
def payload() -> AnalysisTaskPayload:
    return AnalysisTaskPayload(
        result_id=1,
        simulation_id="SIM-1",
        org_name="acme",
        source_location="s3://active-hacks/simulations/active_directory/results/SIM-1",
    )
