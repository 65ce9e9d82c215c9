"""Audio artifact storage abstraction for local filesystem and S3."""

import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path

import aioboto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from voicetip.gateway.config import Settings
from voicetip.gateway.exceptions import StorageError

ARTIFACT_PREFIX = "tts_audios"
AUDIO_CONTENT_TYPE = "audio/mpeg"
STREAM_CHUNK_SIZE = 64 * 1024


def artifact_name(request_id: int) -> str:
    """Unique file name for a request's audio. The random suffix only prevents collisions."""
    return f"{request_id}-{uuid.uuid4()}.mp3"


class ArtifactStorage(ABC):
    """Abstract interface for audio artifact backends."""

    @abstractmethod
    async def store(self, name: str, data: bytes, content_type: str = AUDIO_CONTENT_TYPE) -> str:
        """Store artifact and return its durable URL."""

    @abstractmethod
    def owns(self, url: str) -> bool:
        """Check if a URL was produced by this backend."""

    @abstractmethod
    def stream(self, url: str) -> AsyncIterator[bytes]:
        """Yield the artifact's bytes in chunks."""

    @abstractmethod
    async def delete(self, url: str) -> None:
        """Delete the artifact behind a URL; missing artifacts are ignored."""


class LocalArtifactStorage(ArtifactStorage):
    """Store artifacts on local filesystem, served by the gateway under /tts_audios."""

    def __init__(self, base_path: Path, public_url: str = ""):
        self.base_path = base_path
        self.url_prefix = f"{public_url.rstrip('/')}/{ARTIFACT_PREFIX}/"

    async def store(self, name: str, data: bytes, content_type: str = AUDIO_CONTENT_TYPE) -> str:
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            (self.base_path / name).write_bytes(data)
        except OSError as e:
            raise StorageError(f"Failed to write artifact {name}: {e}") from e
        return f"{self.url_prefix}{name}"

    def owns(self, url: str) -> bool:
        return url.startswith(self.url_prefix)

    def _path(self, url: str) -> Path:
        name = url.removeprefix(self.url_prefix)
        if not name or "/" in name or name.startswith("."):
            raise StorageError(f"Invalid artifact URL {url!r}")
        return self.base_path / name

    async def stream(self, url: str) -> AsyncIterator[bytes]:
        path = self._path(url)
        try:
            with path.open("rb") as f:
                while chunk := f.read(STREAM_CHUNK_SIZE):
                    yield chunk
        except OSError as e:
            raise StorageError(f"Failed to read artifact {path.name}: {e}") from e

    async def delete(self, url: str) -> None:
        self._path(url).unlink(missing_ok=True)


class S3ArtifactStorage(ArtifactStorage):
    """Store artifacts in an S3 bucket, served by the bucket URL or a CDN in front of it."""

    def __init__(
        self,
        bucket_name: str,
        region: str,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        endpoint_url: str | None = None,
        public_url: str | None = None,
    ):
        self.bucket_name = bucket_name
        base = public_url.rstrip("/") if public_url else f"https://{bucket_name}.s3.{region}.amazonaws.com"
        self.url_prefix = f"{base}/{ARTIFACT_PREFIX}/"
        self._session = aioboto3.Session()
        self._client_config = {
            "region_name": region,
            "aws_access_key_id": access_key_id,
            "aws_secret_access_key": secret_access_key,
            "endpoint_url": endpoint_url,
            "config": Config(signature_version="s3v4"),
        }

    def _key(self, url: str) -> str:
        return f"{ARTIFACT_PREFIX}/{url.removeprefix(self.url_prefix)}"

    async def store(self, name: str, data: bytes, content_type: str = AUDIO_CONTENT_TYPE) -> str:
        key = f"{ARTIFACT_PREFIX}/{name}"
        try:
            async with self._session.client("s3", **self._client_config) as s3:
                await s3.put_object(
                    Bucket=self.bucket_name,
                    Key=key,
                    Body=data,
                    ContentType=content_type,
                )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to upload {key} to S3: {e}") from e
        return f"{self.url_prefix}{name}"

    def owns(self, url: str) -> bool:
        return url.startswith(self.url_prefix)

    async def stream(self, url: str) -> AsyncIterator[bytes]:
        key = self._key(url)
        try:
            async with self._session.client("s3", **self._client_config) as s3:
                response = await s3.get_object(Bucket=self.bucket_name, Key=key)
                async with response["Body"] as body:
                    while chunk := await body.read(STREAM_CHUNK_SIZE):
                        yield chunk
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to fetch {key} from S3: {e}") from e

    async def delete(self, url: str) -> None:
        key = self._key(url)
        async with self._session.client("s3", **self._client_config) as s3:
            await s3.delete_object(Bucket=self.bucket_name, Key=key)
        logger.debug(f"Deleted artifact {key}")


class ArtifactStore:
    """Routes writes by the job's storage flag and reads by URL."""

    def __init__(self, local: ArtifactStorage, remote: ArtifactStorage | None = None):
        self.local = local
        self.remote = remote

    def backend(self, use_remote: bool) -> ArtifactStorage:
        if not use_remote:
            return self.local
        if self.remote is None:
            raise StorageError("Remote artifact storage requested but not configured")
        return self.remote

    def backend_for(self, url: str) -> ArtifactStorage:
        for backend in (self.remote, self.local):
            if backend is not None and backend.owns(url):
                return backend
        raise StorageError(f"No artifact backend serves {url!r}")

    async def store(self, request_id: int, data: bytes, *, use_remote: bool) -> str:
        return await self.backend(use_remote).store(artifact_name(request_id), data)

    def stream(self, url: str) -> AsyncIterator[bytes]:
        return self.backend_for(url).stream(url)

    async def delete(self, url: str) -> None:
        await self.backend_for(url).delete(url)


def create_artifact_store(settings: Settings) -> ArtifactStore:
    remote = None
    if settings.remote_storage_configured:
        assert settings.s3_bucket_name is not None and settings.s3_region is not None
        remote = S3ArtifactStorage(
            bucket_name=settings.s3_bucket_name,
            region=settings.s3_region,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
            endpoint_url=settings.s3_endpoint_url,
            public_url=settings.s3_public_url,
        )
    return ArtifactStore(
        local=LocalArtifactStorage(settings.local_storage_path, settings.local_public_url),
        remote=remote,
    )
