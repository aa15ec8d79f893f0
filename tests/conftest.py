import os
from functools import partial

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_abtest.db")
os.environ.setdefault("COMPLETION_BACKEND", "background")
os.environ.setdefault("DEBUG", "false")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app.core.database import Base, get_db
from app.models.experiment import Experiment
from app.services.experiments.completion import BackgroundCompletionQueue
from app.services.experiments.service import (
    ExperimentService,
    get_completion_queue,
    run_completion_job,
)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'experiments.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def completion_queue(session_factory):
    return BackgroundCompletionQueue(partial(run_completion_job, session_factory=session_factory))


@pytest.fixture
def service(db_session, completion_queue):
    return ExperimentService(db_session, completion_queue=completion_queue)


@pytest.fixture
def set_counters(session_factory):
    """Overwrite an experiment's aggregate counters directly."""

    async def _set(experiment_id: str, **counters):
        async with session_factory() as session:
            await session.execute(
                update(Experiment).where(Experiment.id == experiment_id).values(**counters)
            )
            await session.commit()

    return _set


@pytest_asyncio.fixture
async def client(session_factory, completion_queue):
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_completion_queue] = lambda: completion_queue

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client

    app.dependency_overrides.clear()
