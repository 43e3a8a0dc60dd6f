from __future__ import annotations

import asyncio
import time
from typing import Any, List, Optional

import structlog

from src.voicebridge.audio import TWILIO_SAMPLE_RATE, frame_size, silence_frames, tone_frames, wav_to_frames
from src.voicebridge.config import get_config
from src.voicebridge.errors import UpstreamTimeout
from src.voicebridge.tts_providers.base import TTSProvider
from src.voicebridge.tts_providers.openai_tts import OpenAITTS

logger = structlog.get_logger(__name__)

EMPTY_AUDIO_SILENCE_FRAMES = 15
FALLBACK_TONE_MS = 2000
FALLBACK_TONE_HZ = 600.0
FALLBACK_SILENCE_FRAMES = 20


class TTSManager:
    """
    Per-call speech synthesis: text -> telephony frames.

    Always returns a non-empty, playable frame list. Synthesis failures become
    a fixed tone (default) or silence, per `TTS_FALLBACK`.
    """

    def __init__(self, config: Optional[Any] = None, provider: Optional[TTSProvider] = None):
        self.config = config or get_config()
        self._provider = provider
        self.last_latency_ms: float = 0.0

    def _get_provider(self) -> TTSProvider:
        if self._provider is None:
            self._provider = OpenAITTS(self.config)
        return self._provider

    async def stop(self) -> None:
        if self._provider:
            await self._provider.close()
            self._provider = None

    @property
    def frame_bytes(self) -> int:
        return frame_size(TWILIO_SAMPLE_RATE, self.config.frame_duration_ms)

    def fallback_frames(self) -> List[bytes]:
        if self.config.tts_fallback == "silence":
            return silence_frames(FALLBACK_SILENCE_FRAMES, self.frame_bytes)
        return tone_frames(
            FALLBACK_TONE_MS,
            FALLBACK_TONE_HZ,
            frame_duration_ms=self.config.frame_duration_ms,
            pad_final=self.config.pad_final_frame,
        )

    async def _fetch_wav(self, text: str) -> bytes:
        try:
            return await asyncio.wait_for(
                self._get_provider().synthesize_wav(text),
                timeout=self.config.tts_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamTimeout(f"TTS timed out after {self.config.tts_timeout_seconds}s") from e

    async def synthesize_frames(self, text: str) -> List[bytes]:
        """Synthesize `text` and encode it as mu-law frames."""
        start_time = time.time()
        try:
            wav_bytes = await self._fetch_wav(text)
            frames = wav_to_frames(
                wav_bytes,
                frame_duration_ms=self.config.frame_duration_ms,
                pad_final=self.config.pad_final_frame,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "TTS failed, using fallback audio",
                fallback=self.config.tts_fallback,
                error_type=type(e).__name__,
                error=str(e),
            )
            return self.fallback_frames()
        finally:
            self.last_latency_ms = (time.time() - start_time) * 1000

        if not frames:
            logger.warning("TTS returned no audio, using silence")
            return silence_frames(EMPTY_AUDIO_SILENCE_FRAMES, self.frame_bytes)

        logger.debug("TTS frames prepared", frames=len(frames), latency_ms=round(self.last_latency_ms, 2))
        return frames
