import os
_default_test_secret = "test-jwt-secret-for-pytest-only-0000000000000000"
if len(os.environ.get("JWT_SECRET", "")) < 32:
    os.environ["JWT_SECRET"] = _default_test_secret
os.environ.setdefault("ENV", "test")

import subprocess
import tempfile
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url

_SQLITE_PATH = Path(tempfile.gettempdir()) / "opsflow_test.sqlite3"

TEST_DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{_SQLITE_PATH}")
os.environ["DATABASE_URL"] = TEST_DATABASE_URL

from opsflow import database


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


def _is_postgres() -> bool:
    return make_url(TEST_DATABASE_URL).drivername.startswith("postgresql")


@pytest.fixture(scope="session", autouse=True)
def _prepare_test_database() -> None:
    if not _is_postgres() and _SQLITE_PATH.exists():
        _SQLITE_PATH.unlink()

    _ensure_database_exists(TEST_DATABASE_URL)

    env = os.environ.copy()
    env["DATABASE_URL"] = TEST_DATABASE_URL

    subprocess.run(
        ["alembic", "upgrade", "head"],
        check=True,
        cwd=Path(__file__).resolve().parents[2],
        env=env,
    )

    database.configure_database()


def _truncate_all() -> None:
    with database.engine.begin() as conn:
        rows = conn.execute(
            text(
                """
                SELECT tablename
                FROM pg_tables
                WHERE schemaname = 'public'
                  AND tablename <> 'alembic_version'
                """
            )
        ).fetchall()

        table_names = [row[0] for row in rows]
        if table_names:
            quoted = ", ".join([f'"public"."{name}"' for name in table_names])
            conn.execute(text(f"TRUNCATE TABLE {quoted} RESTART IDENTITY CASCADE"))


@pytest.fixture(scope="function", autouse=True)
def _truncate_tables_between_tests():
    # workflow_history rejects DELETE, so the SQLite file is only reset per session;
    # tests key their rows by fresh ids instead.
    if _is_postgres():
        _truncate_all()

    yield

    if _is_postgres():
        _truncate_all()
