"""
Deepgram Speech-to-Text streaming client.

Telephony mu-law 8kHz is forwarded to Deepgram unchanged (encoding=mulaw).
Only finalized utterances are surfaced to the session, as `FinalTranscript`;
interim results are discarded.

A KeepAlive heartbeat runs while the socket is open so Deepgram does not close
the stream during long caller silences or while we are speaking.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.voicebridge.audio import TWILIO_SAMPLE_RATE
from src.voicebridge.config import get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_URL = "wss://api.deepgram.com/v1/listen"

KEEPALIVE_MESSAGE = json.dumps({"type": "KeepAlive"})
CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})


@dataclass(frozen=True)
class FinalTranscript:
    """A finalized utterance from the recognizer."""
    text: str
    confidence: float = 0.0
    timestamp: float = field(default_factory=time.time)


@dataclass
class STTMetrics:
    """Metrics for recognizer traffic."""
    total_audio_ms: float = 0.0
    final_transcripts: int = 0
    discarded_interim: int = 0
    keepalives_sent: int = 0
    keepalive_failures: int = 0


def adapt_transcript_message(data: Dict[str, Any]) -> Optional[FinalTranscript]:
    """
    Normalize a recognizer message into a `FinalTranscript`, or None.

    Accepted shapes:
    - Deepgram `Results`: `channel.alternatives[0].transcript` with `is_final`
      or `speech_final`
    - flat: `{"transcript": ..., "is_final": true}`
    Interim results and empty transcripts return None.
    """
    if not isinstance(data, dict):
        return None

    text = ""
    confidence = 0.0
    channel = data.get("channel")
    if isinstance(channel, dict):
        alternatives = channel.get("alternatives") or []
        if alternatives and isinstance(alternatives[0], dict):
            text = alternatives[0].get("transcript") or ""
            confidence = float(alternatives[0].get("confidence") or 0.0)
    if not text:
        text = data.get("transcript") or ""

    is_final = bool(data.get("is_final")) or bool(data.get("speech_final"))
    text = text.strip() if isinstance(text, str) else ""
    if not is_final or not text:
        return None

    return FinalTranscript(text=text, confidence=confidence)


class DeepgramSTT:
    """
    Deepgram streaming STT client using raw WebSocket.

    Callbacks:
    - on_transcript(FinalTranscript): finalized utterances only
    - on_error(str): connection-level or service-reported errors
    - on_close(): the socket closed (not called for our own disconnect())
    """

    def __init__(
        self,
        on_transcript: Optional[Callable[[FinalTranscript], Awaitable[None]]] = None,
        on_error: Optional[Callable[[str], Awaitable[None]]] = None,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
        config: Optional[Any] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._on_transcript = on_transcript
        self._on_error = on_error
        self._on_close = on_close
        self._ws = None
        self._is_connected = False
        self._closing = False
        self._metrics = STTMetrics()
        self._receive_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    @property
    def url(self) -> str:
        params = {
            "model": self.config.deepgram_model,
            "encoding": "mulaw",
            "sample_rate": TWILIO_SAMPLE_RATE,
            "channels": 1,
            "punctuate": "true",
            "smart_format": "true",
            "interim_results": "false",
            "endpointing": self.config.deepgram_endpointing_ms,
        }
        return f"{DEEPGRAM_URL}?{urlencode(params)}"

    async def connect(self) -> bool:
        """
        Connect to the Deepgram streaming API.

        Tries up to `deepgram_connect_attempts` times. Returns False (never raises)
        when no attempt succeeds; the caller keeps running without a recognizer.
        """
        if self._is_connected:
            return True

        if not self.config.deepgram_api_key:
            logger.error("Deepgram connection skipped: DEEPGRAM_API_KEY not set")
            return False

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        attempts = max(1, int(self.config.deepgram_connect_attempts))

        for attempt in range(1, attempts + 1):
            try:
                logger.info("Connecting to Deepgram", attempt=attempt, model=self.config.deepgram_model)
                self._ws = await websockets.connect(
                    self.url,
                    additional_headers=headers,
                    open_timeout=self.config.deepgram_open_timeout_seconds,
                )
                break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "Deepgram connection attempt failed",
                    attempt=attempt,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                self._ws = None

        if not self._ws:
            logger.error("Deepgram connection failed", attempts=attempts)
            return False

        self._is_connected = True
        self._closing = False
        self._receive_task = asyncio.create_task(self._receive_loop())
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        logger.info("Deepgram STT connected")
        return True

    async def disconnect(self) -> None:
        """Disconnect from Deepgram. Errors during release are logged and ignored."""
        self._closing = True
        was_connected = self._is_connected
        self._is_connected = False

        for task in (self._keepalive_task, self._receive_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.warning("Deepgram task ended with error", error=str(e))
        self._keepalive_task = None
        self._receive_task = None

        if self._ws:
            if was_connected:
                try:
                    await self._ws.send(CLOSE_STREAM_MESSAGE)
                except Exception as e:
                    logger.debug("CloseStream not delivered", error=str(e))
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected")

    async def send_audio(self, audio_bytes: bytes) -> None:
        """
        Forward raw mu-law audio. Silent no-op when not connected.

        Frames are never buffered for later: stale audio must not reach the
        recognizer after a reconnect.
        """
        if not self._is_connected or not self._ws or not audio_bytes:
            return

        try:
            self._metrics.total_audio_ms += len(audio_bytes) / (TWILIO_SAMPLE_RATE / 1000)
            await self._ws.send(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def _keepalive_loop(self) -> None:
        """Send KeepAlive on a fixed interval while connected."""
        interval = self.config.deepgram_keepalive_seconds
        try:
            while self._is_connected:
                await asyncio.sleep(interval)
                if not self._is_connected or not self._ws:
                    break
                try:
                    await self._ws.send(KEEPALIVE_MESSAGE)
                    self._metrics.keepalives_sent += 1
                except Exception as e:
                    # Not fatal: the receive loop reports closure if the socket is gone.
                    self._metrics.keepalive_failures += 1
                    logger.warning("Deepgram keepalive failed", error=str(e))
        except asyncio.CancelledError:
            pass

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                if not self._is_connected:
                    break

                try:
                    data = json.loads(message)
                    await self._handle_message(data)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed as e:
            logger.info("Deepgram connection closed", code=getattr(e, "code", None))
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
            await self._emit_error(str(e))
        finally:
            self._is_connected = False

        if not self._closing:
            if self._keepalive_task and not self._keepalive_task.done():
                self._keepalive_task.cancel()
            if self._on_close:
                try:
                    await self._on_close()
                except Exception as e:
                    logger.error("Recognizer close callback failed", error=str(e))

    async def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "error":
            description = data.get("description") or data.get("message") or "Unknown"
            logger.error("Deepgram error", error=description, details=data)
            await self._emit_error(str(description))
            return

        result = adapt_transcript_message(data)
        if result is None:
            if msg_type_norm == "results":
                self._metrics.discarded_interim += 1
            return

        self._metrics.final_transcripts += 1
        logger.debug(
            "STT final transcript",
            text=result.text[:50] if len(result.text) > 50 else result.text,
            confidence=result.confidence,
        )

        if self._on_transcript:
            await self._on_transcript(result)

    async def _emit_error(self, message: str) -> None:
        if not self._on_error:
            return
        try:
            await self._on_error(message)
        except Exception as e:
            logger.error("Recognizer error callback failed", error=str(e))
