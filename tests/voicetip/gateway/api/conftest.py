import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient

from voicetip.gateway.app import create_app
from voicetip.gateway.auth import authenticate
from voicetip.gateway.domain_models import Creator, User, UserRole
from voicetip.gateway.services import Services
from voicetip.workers.pool import WorkerPool


@pytest.fixture
def services(settings, redis_client, synthesizer) -> Services:
    return Services(settings, redis_client=redis_client, synthesizer=synthesizer)


@pytest_asyncio.fixture(scope="function")
async def app(settings, services) -> FastAPI:
    app = create_app(settings, services)

    async with app.router.lifespan_context(app):
        async with services.session_factory() as session:
            session.add(Creator(id=3, name="Streamer"))
            await session.commit()
            session.add_all(
                [
                    User(id=1, username="admin", role=UserRole.admin),
                    User(id=7, username="fan"),
                    User(id=8, username="streamer", creator_id=3),
                    User(id=9, username="lurker"),
                ]
            )
            await session.commit()
        yield app


async def _get_user(app: FastAPI, user_id: int) -> User:
    user = await app.state.services.store.get_user(user_id)
    assert user is not None
    return user


@pytest_asyncio.fixture
async def as_requester(app):
    """Set auth to the fan who sends tips."""
    user = await _get_user(app, 7)
    app.dependency_overrides[authenticate] = lambda: user
    yield user
    app.dependency_overrides.pop(authenticate, None)


@pytest_asyncio.fixture
async def as_creator(app):
    """Set auth to the creator's own account."""
    user = await _get_user(app, 8)
    app.dependency_overrides[authenticate] = lambda: user
    yield user
    app.dependency_overrides.pop(authenticate, None)


@pytest_asyncio.fixture
async def as_stranger(app):
    user = await _get_user(app, 9)
    app.dependency_overrides[authenticate] = lambda: user
    yield user
    app.dependency_overrides.pop(authenticate, None)


@pytest_asyncio.fixture
async def as_admin(app):
    user = await _get_user(app, 1)
    app.dependency_overrides[authenticate] = lambda: user
    yield user
    app.dependency_overrides.pop(authenticate, None)


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def worker(services) -> WorkerPool:
    """A pool bound to the app's services; tests drive it with `process_next`."""
    return WorkerPool(
        services.queue,
        services.store,
        services.artifacts,
        services.synthesizer,
        services.hub,
        concurrency=1,
        name="api-test",
    )
