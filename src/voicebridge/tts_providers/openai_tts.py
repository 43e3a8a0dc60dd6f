from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog
from openai import AsyncOpenAI

from src.voicebridge.config import get_config
from src.voicebridge.errors import UpstreamUnavailable
from src.voicebridge.tts_providers.base import TTSProvider

logger = structlog.get_logger(__name__)


class OpenAITTS(TTSProvider):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    Synthesizes the full reply as one WAV container.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.config.openai_api_key:
                raise UpstreamUnavailable("Missing OPENAI_API_KEY")
            self._client = AsyncOpenAI(
                api_key=self.config.openai_api_key,
                timeout=httpx.Timeout(self.config.tts_timeout_seconds),
                max_retries=0,
            )
        return self._client

    async def synthesize_wav(self, text: str) -> bytes:
        client = self._get_client()
        try:
            resp = await client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=self.config.openai_tts_voice,
                input=text,
                response_format="wav",
            )
        except Exception as e:
            raise UpstreamUnavailable(f"OpenAI TTS failed: {type(e).__name__}: {e}") from e

        # SDKs have varied over time; handle several shapes.
        data = getattr(resp, "content", None)
        if isinstance(data, (bytes, bytearray)):
            return bytes(data)
        read = getattr(resp, "read", None)
        if callable(read):
            data = read()
            if hasattr(data, "__await__"):
                data = await data
            return bytes(data)
        return bytes(resp)

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.close()
            except Exception as e:
                logger.debug("Error closing TTS client", error=str(e))
