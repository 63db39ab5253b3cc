import os
_default_test_secret = "test-jwt-secret-for-pytest-only-0000000000000000"
if len(os.environ.get("JWT_SECRET", "")) < 32:
    os.environ["JWT_SECRET"] = _default_test_secret

import subprocess
import sys
import tempfile
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url

# Postgres when TEST_DATABASE_URL points at one; otherwise a throwaway SQLite file.
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL") or "sqlite:///" + os.path.join(
    tempfile.mkdtemp(prefix="timekeeper-tests-"), "timekeeper_test.db"
)
os.environ["DATABASE_URL"] = TEST_DATABASE_URL

from timekeeper import database
from timekeeper import models  # noqa: F401
from timekeeper.models.company import Company
from timekeeper.models.project import Project
from timekeeper.models.user import User
from timekeeper.services import side_effects


def _ensure_database_exists(database_url: str) -> None:
    url = make_url(database_url)

    if not url.drivername.startswith("postgresql"):
        return

    db_name = url.database
    admin_url = url.set(database="postgres")
    admin_engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")

    try:
        with admin_engine.connect() as conn:
            exists = conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": db_name},
            ).scalar()
            if not exists:
                safe_db_name = db_name.replace('"', '""')
                conn.execute(text(f'CREATE DATABASE "{safe_db_name}"'))
    finally:
        admin_engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def _prepare_test_database() -> None:
    _ensure_database_exists(TEST_DATABASE_URL)

    env = os.environ.copy()
    env["DATABASE_URL"] = TEST_DATABASE_URL

    subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        check=True,
        cwd=Path(__file__).resolve().parents[2],
        env=env,
    )

    database.configure_database()


def _clear_tables() -> None:
    with database.engine.begin() as conn:
        if conn.dialect.name == "postgresql":
            quoted = ", ".join(f'"{t.name}"' for t in database.Base.metadata.sorted_tables)
            conn.execute(text(f"TRUNCATE TABLE {quoted} RESTART IDENTITY CASCADE"))
            return
        for table in reversed(database.Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(scope="function", autouse=True)
def _truncate_tables_between_tests():
    _clear_tables()
    side_effects.configure_side_effects()
    yield
    side_effects.configure_side_effects()
    _clear_tables()


@pytest.fixture
def company_factory():
    def _create(name: str = "Acme", idle_detection_enabled: bool = False, idle_threshold_seconds: int = 300) -> Company:
        db = database.SessionLocal()
        try:
            row = Company(
                name=name,
                idle_detection_enabled=idle_detection_enabled,
                idle_threshold_seconds=idle_threshold_seconds,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return row
        finally:
            db.close()

    return _create


@pytest.fixture
def user_factory():
    def _create(company_id: int, role: str = "EMPLOYEE", name: str = "Worker", is_active: bool = True) -> User:
        db = database.SessionLocal()
        try:
            row = User(company_id=int(company_id), name=name, role=role, is_active=is_active)
            db.add(row)
            db.commit()
            db.refresh(row)
            return row
        finally:
            db.close()

    return _create


@pytest.fixture
def project_factory():
    def _create(company_id: int, name: str = "Website", is_archived: bool = False) -> Project:
        db = database.SessionLocal()
        try:
            row = Project(company_id=int(company_id), name=name, is_archived=is_archived)
            db.add(row)
            db.commit()
            db.refresh(row)
            return row
        finally:
            db.close()

    return _create


class RecordingSink(side_effects.NotificationSink, side_effects.BroadcastSink, side_effects.StatsCache):
    """Collects every side-effect call as (method, args)."""

    def __init__(self):
        self.calls = []

    def notify_user(self, *args, **kwargs):
        self.calls.append(("notify_user", args))

    def notify_users(self, *args, **kwargs):
        self.calls.append(("notify_users", args))

    def broadcast_entry_change(self, *args, **kwargs):
        self.calls.append(("broadcast_entry_change", args))

    def broadcast_stats_invalidate(self, *args, **kwargs):
        self.calls.append(("broadcast_stats_invalidate", args))

    def broadcast_idle_detection(self, *args, **kwargs):
        self.calls.append(("broadcast_idle_detection", args))

    def invalidate_stats(self, *args, **kwargs):
        self.calls.append(("invalidate_stats", args))

    def names(self):
        return [name for name, _ in self.calls]


@pytest.fixture
def recording_sink():
    sink = RecordingSink()
    side_effects.configure_side_effects(notifier=sink, broadcaster=sink, stats_cache=sink)
    return sink
