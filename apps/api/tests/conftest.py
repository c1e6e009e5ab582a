from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from routers import rate_limit


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def heuristic_scoring_settings():
    """Never reach the real scoring model from tests; run jobs in-process."""
    with (
        patch.object(settings, "OPENAI_API_KEY", ""),
        patch.object(settings, "REANALYSIS_EXECUTION_MODE", "inline"),
        patch.object(settings, "REANALYSIS_TIMEOUT_SECONDS", 120.0),
        patch.object(settings, "SCORING_ANALYZER_TIMEOUT_SECONDS", 45.0),
        patch.object(settings, "RECOMMENDATION_APPLY_THRESHOLD", 6),
    ):
        yield


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "studio.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    with (
        patch("services.reanalysis.async_session_maker", maker),
        patch("services.reanalysis_queue.async_session_maker", maker),
    ):
        yield maker

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def studio_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
