"""Shared fixtures: SQLite-backed request store, in-process Redis, fake synthesizer."""

import asyncio
from dataclasses import dataclass, field

import fakeredis
import pytest
import pytest_asyncio

from voicetip.gateway.config import Settings
from voicetip.gateway.db import create_engine, create_session_factory, prepare_database
from voicetip.gateway.domain_models import Creator, User, UserRole
from voicetip.gateway.request_store import RequestStore
from voicetip.gateway.storage import ArtifactStore, LocalArtifactStorage
from voicetip.workers.queue import JobQueue
from voicetip.workers.synthesis import SynthesisClient

FAKE_AUDIO = b"ID3\x04\x00fake-mp3-frames"

ADMIN_ID = 1
REQUESTER_ID = 7
CREATOR_ACCOUNT_ID = 8
STRANGER_ID = 9
CREATOR_ID = 3


class FakeSynthesizer(SynthesisClient):
    """Returns FAKE_AUDIO, or raises the queued errors first."""

    def __init__(self, audio: bytes = FAKE_AUDIO):
        self.audio = audio
        self.calls: list[tuple[str, str]] = []
        self.errors: list[Exception] = []
        self.fail_always: Exception | None = None
        self.delay_s = 0.0
        self.initialized = False

    async def initialize(self) -> None:
        self.initialized = True

    async def synthesize(self, text: str, voice: str) -> bytes:
        self.calls.append((text, voice))
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.fail_always is not None:
            raise self.fail_always
        if self.errors:
            raise self.errors.pop(0)
        return self.audio


@dataclass
class Accounts:
    admin: User
    requester: User
    creator_account: User
    stranger: User
    creator: Creator
    others: list[User] = field(default_factory=list)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'voicetip.db'}",
        redis_url="redis://localhost:6379/0",
        log_dir=tmp_path / "logs",
        local_storage_path=tmp_path / "tts_audios",
        use_remote_storage=False,
        job_backoff_delay_ms=0,
    )


@pytest_asyncio.fixture
async def session_factory(settings):
    engine = create_engine(settings)
    await prepare_database(engine, settings)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def accounts(session_factory) -> Accounts:
    creator = Creator(id=CREATOR_ID, name="Streamer")
    users = Accounts(
        admin=User(id=ADMIN_ID, username="admin", role=UserRole.admin),
        requester=User(id=REQUESTER_ID, username="fan"),
        creator_account=User(id=CREATOR_ACCOUNT_ID, username="streamer", creator_id=CREATOR_ID),
        stranger=User(id=STRANGER_ID, username="lurker"),
        creator=creator,
    )
    async with session_factory() as session:
        session.add(creator)
        await session.commit()
        session.add_all([users.admin, users.requester, users.creator_account, users.stranger])
        await session.commit()
    return users


@pytest.fixture
def store(session_factory) -> RequestStore:
    return RequestStore(session_factory)


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())
    yield client
    await client.aclose()


@pytest.fixture
def queue(redis_client) -> JobQueue:
    return JobQueue(redis_client)


@pytest.fixture
def artifacts(settings) -> ArtifactStore:
    return ArtifactStore(local=LocalArtifactStorage(settings.local_storage_path))


@pytest.fixture
def synthesizer() -> FakeSynthesizer:
    return FakeSynthesizer()

