"""
Pytest configuration and fixtures for listing extractor tests.
"""

import os

# Must be set before the package reads its settings
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DISPATCH_MODE"] = "inline"
os.environ["LOG_JSON"] = "false"

from collections.abc import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from listing_extractor.api.main import create_app  # noqa: E402
from listing_extractor.db.database import init_db  # noqa: E402
from listing_extractor.pipeline.rate_limiter import ProviderRateLimiter  # noqa: E402
from listing_extractor.pipeline.runner import PipelineRunner  # noqa: E402
from listing_extractor.pipeline.store import JobStore  # noqa: E402
from listing_extractor.service import ExtractionService, InlineDispatcher  # noqa: E402
from tests.fakes import FakeProvider, hotel_payloads, make_providers, no_sleep  # noqa: E402


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_maker) -> JobStore:
    return JobStore(session_maker, max_attempts=2, backoff_base=0)


@pytest.fixture
def providers() -> dict[str, FakeProvider]:
    return make_providers(hotel_payloads())


@pytest.fixture
def sleep():
    return no_sleep()


@pytest.fixture
def runner(store: JobStore, providers, sleep) -> PipelineRunner:
    return PipelineRunner(
        store,
        providers,
        rate_limiter=ProviderRateLimiter(default_limit=4),
        step_concurrency=3,
        sleep=sleep,
    )


@pytest.fixture
def dispatcher(runner: PipelineRunner) -> InlineDispatcher:
    return InlineDispatcher(runner)


@pytest.fixture
def service(store: JobStore, dispatcher: InlineDispatcher) -> ExtractionService:
    return ExtractionService(store, dispatcher)


@pytest_asyncio.fixture(scope="function")
async def client(service: ExtractionService) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client against an app wired to the test service."""
    app = create_app(service)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
