"""pytest fixtures for the render pipeline tests.

Provides:
- postgres_container: Session-scoped testcontainer PostgreSQL (only when GSS_TEST_POSTGRES=1)
- database_url: Per-test database (SQLite file by default, migrated PostgreSQL otherwise)
- session / uow_factory: Database access for the test
- settings: Test settings (short intervals, no Replicate token required)
- collaborators: Scripted classifier, generator and QC evaluator
"""

import os
import subprocess
import sys
from pathlib import Path
from typing import AsyncGenerator

# Settings validation is skipped in the test environment (no Replicate token needed)
os.environ["APP_ENV"] = "test"
os.environ["TZ"] = "UTC"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import text  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

from gss import models  # noqa: E402,F401
from gss.core.config import Settings  # noqa: E402
from gss.core.database import setup_db_session  # noqa: E402
from gss.services.collaborators import (  # noqa: E402
    Classification,
    Collaborators,
    GeneratedArtifact,
    QCResult,
)
from gss.uow import create_uow_factory  # noqa: E402

PROJECT_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container with migrations applied.

    Only started when GSS_TEST_POSTGRES=1; the default run uses SQLite files.
    Migrations are applied using subprocess to avoid asyncio event loop conflicts.
    """
    if os.environ.get("GSS_TEST_POSTGRES") != "1":
        yield None
        return

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_gss",
    ).with_bind_ports(5432, None) as container:
        db_url = container.get_connection_url(driver="psycopg")

        # Set DATABASE_URL environment variable for alembic env.py
        env = os.environ.copy()
        env["DATABASE_URL"] = db_url

        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=PROJECT_ROOT,
        )

        yield container


@pytest_asyncio.fixture(scope="function")
async def database_url(postgres_container, tmp_path) -> AsyncGenerator[str, None]:
    """Provide a database with the schema in place and empty tables."""
    if postgres_container is None:
        db_url = f"sqlite+aiosqlite:///{tmp_path / 'gss-test.db'}"
        session_factory = setup_db_session(db_url)
        engine = session_factory.kw["bind"]
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        await engine.dispose()
        yield db_url
        return

    db_url = postgres_container.get_connection_url(driver="psycopg")
    yield db_url

    # Truncate all tables for test isolation (children first)
    session_factory = setup_db_session(db_url, pool_size=1)
    async with session_factory() as session:
        await session.execute(text("DELETE FROM generation_attempts"))
        await session.execute(text("DELETE FROM renders"))
        await session.execute(text("DELETE FROM jobs"))
        await session.commit()
    await session_factory.kw["bind"].dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(database_url):
    """Provide function-scoped async session factory bound to the test database."""
    factory = setup_db_session(database_url, pool_size=5)
    yield factory
    await factory.kw["bind"].dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session.

    Commit before handing rows to code that opens its own Unit of Work.
    """
    async with session_factory() as session:
        yield session
        # Rollback any uncommitted changes from the test
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for tests (fast polling, defaults elsewhere)."""
    return Settings(  # type: ignore[call-arg]
        APP_ENV="test",
        WORKER_COUNT=2,
        POLL_INTERVAL_SECONDS=0.05,
        RECOVERY_INTERVAL_SECONDS=0.05,
        RENDER_CONCURRENCY=4,
        MAX_JOB_RETRIES=3,
        JOB_RETRY_BASE_DELAY_SECONDS=30,
        JOB_RETRY_MAX_DELAY_SECONDS=900,
        REQUIRE_QC_SIGNOFF=False,
    )


# ====================
# Scripted collaborators
# ====================


class ScriptedClassifier:
    """Classifies every image as a living room unless an error is scripted for it."""

    def __init__(self):
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []

    async def classify(self, image_ref: str) -> Classification:
        self.calls.append(image_ref)
        error = self.errors.get(image_ref)
        if error is not None:
            raise error
        return Classification(
            shot_type="living_room",
            confidence=0.92,
            tags=frozenset({"wide_angle", "hdr"}),
            prompt="bright living room with mid-century furniture",
            motion_recommendation="pan_left",
            raw={"shot_type": "living_room", "confidence": 0.92},
        )


class ScriptedGenerator:
    """Returns a fresh artifact per call; `errors` are raised first, in order (None skips)."""

    def __init__(self):
        self.errors: list[Exception | None] = []
        self.calls: list[tuple[str, dict]] = []

    async def generate(self, image_ref, parameters, prompt=None) -> GeneratedArtifact:
        self.calls.append((image_ref, parameters.model_dump()))
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        number = len(self.calls)
        return GeneratedArtifact(
            artifact_ref=f"https://renders.test/{number}.png",
            raw_response={"output": f"https://renders.test/{number}.png"},
        )


class ScriptedEvaluator:
    """Answers from a per-image script, then with `default` (PASS unless changed)."""

    def __init__(self):
        self.script: dict[str, list[QCResult | Exception]] = {}
        self.default: QCResult | Exception = QCResult(verdict="PASS", raw={"verdict": "PASS"})
        self.calls: list[tuple[str, int, dict]] = []

    async def evaluate(self, artifact_ref, context) -> QCResult:
        self.calls.append(
            (context.source_image_url, context.attempt_number, context.parameters.model_dump())
        )
        steps = self.script.get(context.source_image_url)
        step = steps.pop(0) if steps else self.default
        if isinstance(step, Exception):
            raise step
        return step


@pytest.fixture
def collaborators() -> Collaborators:
    """Fresh scripted collaborators; tests adjust .errors, .script and .default."""
    return Collaborators(
        classifier=ScriptedClassifier(),
        generator=ScriptedGenerator(),
        evaluator=ScriptedEvaluator(),
    )
