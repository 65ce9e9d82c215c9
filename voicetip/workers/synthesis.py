"""Remote text-to-speech client (ElevenLabs compatible streaming endpoint)."""

from abc import ABC, abstractmethod

import httpx
from loguru import logger

from voicetip.gateway.exceptions import SynthesisError

# 408 and 429 are worth another attempt, other client errors are not
RETRYABLE_CLIENT_STATUS_CODES = {408, 429}

VOICES: list[dict[str, str]] = [
    {"id": "s2wvuS7SwITYg8dqsJdn", "name": "Old Italian Man"},
    {"id": "2xnESBHcLHCxcxvOM2bJ", "name": "Middle-Aged British Man"},
    {"id": "rl410D8bMOfIkD4QyPae", "name": "Midwestern American Man"},
    {"id": "pqHfZKP75CvOlQylNhV4", "name": "Bill"},
    {"id": "21m00Tcm4TlvDq8ikWAM", "name": "Rachel"},
]


class SynthesisClient(ABC):
    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def synthesize(self, text: str, voice: str) -> bytes:
        """Return MP3 audio for `text` spoken by `voice`.

        Raises:
            SynthesisError: the remote call failed; `retryable` says whether another attempt may help.
        """

    async def close(self) -> None:
        return None


class ElevenLabsClient(SynthesisClient):
    def __init__(
        self,
        api_url: str,
        api_key: str | None,
        default_voice_id: str,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key
        self._default_voice_id = default_voice_id
        self._timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def initialize(self) -> None:
        self._client = httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def resolve_voice(self, voice: str) -> str:
        return self._default_voice_id if voice.lower() == "default" else voice

    async def synthesize(self, text: str, voice: str) -> bytes:
        if self._client is None:
            raise RuntimeError("Synthesis client not initialized")

        voice_id = self.resolve_voice(voice)
        try:
            response = await self._client.post(
                f"{self._api_url}/{voice_id}/stream",
                json={"text": text},
                headers={"xi-api-key": self._api_key or "", "Accept": "audio/mpeg"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            detail = _error_detail(e.response)
            retryable = status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUS_CODES
            logger.bind(voice_id=voice_id, status_code=status_code).warning(f"TTS API error: {detail}")
            raise SynthesisError(f"TTS API returned {status_code}: {detail}", retryable=retryable) from e
        except httpx.HTTPError as e:
            raise SynthesisError(f"TTS API request failed: {e!r}") from e

        if not response.content:
            raise SynthesisError("TTS API returned empty audio")
        return response.content


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, dict):
        return str(detail.get("message") or detail)
    return str(detail or body)
