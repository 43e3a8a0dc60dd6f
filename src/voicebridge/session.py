"""Per-call session orchestration.

One CallSession per telephony connection:

inbound media -> recognizer (mulaw/8000) -> FinalTranscript -> turn queue ->
reply gateway -> synthesis -> mu-law frames -> frame pump -> telephony outbound

Turn-taking states: IDLE -> LISTENING <-> SPEAKING, terminal CLOSED.
All transitions go through `dispatch()` and the `_TRANSITIONS` table.

Final transcripts are processed strictly one at a time by a single turn
worker: reply, synthesis and playback of one utterance finish (or abort)
before the next transcript is picked up.

Barge-in: while SPEAKING, inbound audio aborts playback once the grace period
since playback start has elapsed (when enabled). Audio is always forwarded to
the recognizer, since the caller may be starting a new utterance.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from src.voicebridge.config import Config, get_config
from src.voicebridge.llm import ReplyGateway
from src.voicebridge.pump import DeliveryResult, SpeakingControl, deliver_frames
from src.voicebridge.stt import DeepgramSTT, FinalTranscript
from src.voicebridge.tts import TTSManager
from src.voicebridge.twilio_protocol import (
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioProtocolHandler,
    TwilioStartEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


class TurnState(str, Enum):
    """Turn-taking state of a call."""
    IDLE = "idle"
    LISTENING = "listening"
    SPEAKING = "speaking"
    CLOSED = "closed"


class SessionEvent(str, Enum):
    """Everything that can drive a session transition."""
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    STOP = "stop"
    TRANSCRIPT = "transcript"
    RECOGNIZER_ERROR = "recognizer_error"
    RECOGNIZER_CLOSED = "recognizer_closed"
    TRANSPORT_CLOSED = "transport_closed"


def _build_transitions() -> Dict[Tuple[TurnState, SessionEvent], str]:
    idle, listening, speaking = TurnState.IDLE, TurnState.LISTENING, TurnState.SPEAKING
    table = {
        (idle, SessionEvent.START): "_on_start",
        (idle, SessionEvent.MEDIA): "_on_media_before_start",
        (listening, SessionEvent.MEDIA): "_on_media_listening",
        (speaking, SessionEvent.MEDIA): "_on_media_speaking",
        (listening, SessionEvent.TRANSCRIPT): "_on_transcript",
        (speaking, SessionEvent.TRANSCRIPT): "_on_transcript",
        (listening, SessionEvent.MARK): "_on_mark",
        (speaking, SessionEvent.MARK): "_on_mark",
        (listening, SessionEvent.RECOGNIZER_ERROR): "_on_recognizer_error",
        (speaking, SessionEvent.RECOGNIZER_ERROR): "_on_recognizer_error",
        (listening, SessionEvent.RECOGNIZER_CLOSED): "_on_recognizer_closed",
        (speaking, SessionEvent.RECOGNIZER_CLOSED): "_on_recognizer_closed",
    }
    for state in (idle, listening, speaking):
        table[(state, SessionEvent.STOP)] = "_on_stop"
        table[(state, SessionEvent.TRANSPORT_CLOSED)] = "_on_stop"
    return table


_TRANSITIONS = _build_transitions()

_TELEPHONY_EVENTS = {
    TwilioEventType.START: SessionEvent.START,
    TwilioEventType.MEDIA: SessionEvent.MEDIA,
    TwilioEventType.MARK: SessionEvent.MARK,
    TwilioEventType.STOP: SessionEvent.STOP,
}


@dataclass
class TurnMetrics:
    """Metrics for a single conversation turn."""
    turn_id: int = 0
    start_time: float = 0.0
    llm_ms: float = 0.0
    tts_ms: float = 0.0
    frames_total: int = 0
    frames_sent: int = 0
    total_turn_ms: float = 0.0
    was_interrupted: bool = False

    def finalize(self) -> None:
        """Calculate total turn time."""
        if self.start_time > 0:
            self.total_turn_ms = (time.time() - self.start_time) * 1000


@dataclass
class CallMetrics:
    """Metrics for an entire call."""
    call_id: str = ""
    stream_sid: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    turns: List[TurnMetrics] = field(default_factory=list)
    total_interruptions: int = 0
    frames_sent: int = 0
    media_dropped: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "stream_sid": self.stream_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "total_turns": len(self.turns),
            "total_interruptions": self.total_interruptions,
            "frames_sent": self.frames_sent,
            "media_dropped": self.media_dropped,
            "avg_turn_ms": round(
                sum(t.total_turn_ms for t in self.turns) / len(self.turns), 2
            ) if self.turns else 0,
        }


RecognizerFactory = Callable[..., Any]


class CallSession:
    """
    Orchestrator for one call.

    Owns the telephony stream state, one recognizer connection, the reply
    gateway, the synthesizer and the turn worker. Nothing here is shared with
    other sessions.
    """

    def __init__(
        self,
        call_id: str,
        send_message: Callable[[str], Awaitable[None]],
        config: Optional[Config] = None,
        *,
        recognizer_factory: Optional[RecognizerFactory] = None,
        reply_gateway: Optional[ReplyGateway] = None,
        tts: Optional[TTSManager] = None,
        on_closed: Optional[Callable[[str], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the session.

        Args:
            call_id: Opaque identifier assigned when the connection opened
            send_message: Async function to send WebSocket messages to the telephony peer
            config: Optional configuration (uses default if not provided)
            recognizer_factory: Builds the recognizer; called with on_transcript,
                on_error, on_close and config keyword arguments
            on_closed: Called once with `call_id` after teardown
            clock: Monotonic clock used for the barge-in grace period
            sleep: Suspension used by the frame pump between frames
        """
        if config is None:
            config = get_config()

        self.config = config
        self._call_id = call_id
        self._send_message = send_message
        self._on_closed = on_closed
        self._clock = clock
        self._sleep = sleep
        self._log = logger.bind(call_id=call_id)

        self._barge_in = config.barge_in
        self._protocol = TwilioProtocolHandler()
        self._recognizer_factory = recognizer_factory or DeepgramSTT
        self._recognizer: Optional[Any] = None
        self._llm = reply_gateway or ReplyGateway(config)
        self._tts = tts or TTSManager(config)

        # State
        self._state = TurnState.IDLE
        self._speaking: Optional[SpeakingControl] = None
        self._current_turn = 0
        self._call_metrics = CallMetrics(call_id=call_id)

        # Turn processing (keeps the message loop non-blocking)
        self._turn_queue: asyncio.Queue[FinalTranscript] = asyncio.Queue()
        self._turn_worker_task: Optional[asyncio.Task] = None
        self._recognizer_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None

        self._logged_first_media = False

    @property
    def call_id(self) -> str:
        return self._call_id

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def stream_sid(self) -> str:
        return self._protocol.stream_sid

    @property
    def speaking_control(self) -> Optional[SpeakingControl]:
        return self._speaking

    @property
    def recognizer(self) -> Optional[Any]:
        return self._recognizer

    @property
    def metrics(self) -> CallMetrics:
        return self._call_metrics

    @property
    def is_closed(self) -> bool:
        return self._state == TurnState.CLOSED

    # ------------------------------------------------------------------
    # Event entry points
    # ------------------------------------------------------------------

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from the telephony peer.

        Args:
            raw_message: Raw JSON message string
        """
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            self._log.warning("Failed to parse telephony message", error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            self._log.debug("Telephony connected")
            return

        await self.dispatch(_TELEPHONY_EVENTS[event_type], event)

    async def dispatch(self, event: SessionEvent, payload: Any = None) -> None:
        """Apply one event to the state machine."""
        handler_name = _TRANSITIONS.get((self._state, event))
        if handler_name is None:
            self._log.debug("Event ignored", session_event=event.value, state=self._state.value)
            return
        await getattr(self, handler_name)(payload)

    async def close(self, reason: str = "stop") -> None:
        """Tear the session down. Safe to call more than once."""
        await self.dispatch(SessionEvent.STOP, reason)

    # ------------------------------------------------------------------
    # Transition handlers
    # ------------------------------------------------------------------

    async def _on_start(self, event: TwilioStartEvent) -> None:
        self._protocol.handle_start(event)
        self._call_metrics.stream_sid = event.stream_sid
        self._log = self._log.bind(stream_sid=event.stream_sid)
        self._state = TurnState.LISTENING

        self._log.info("Call started", call_sid=event.call_sid, stream_sid=event.stream_sid)

        self._recognizer = self._recognizer_factory(
            on_transcript=self._recognizer_transcript,
            on_error=self._recognizer_error,
            on_close=self._recognizer_closed,
            config=self.config,
        )
        # Connect in the background; audio arriving before it is open is dropped.
        self._recognizer_task = asyncio.create_task(self._connect_recognizer())

        if self._turn_worker_task is None or self._turn_worker_task.done():
            self._turn_worker_task = asyncio.create_task(self._turn_worker())

    async def _connect_recognizer(self) -> None:
        """Open the recognizer and log success/failure without blocking the call."""
        try:
            ok = await self._recognizer.connect()
            if ok:
                self._log.info("Recognizer ready")
            else:
                self._log.error("Recognizer failed to open; inbound audio will be dropped")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self._log.error("Recognizer start error", error=str(e))

    async def _on_media_before_start(self, event: TwilioMediaEvent) -> None:
        self._call_metrics.media_dropped += 1

    async def _on_media_listening(self, event: TwilioMediaEvent) -> None:
        await self._forward_audio(event.payload)

    async def _on_media_speaking(self, event: TwilioMediaEvent) -> None:
        control = self._speaking
        if control is not None and not control.aborted and self._barge_in.enabled:
            elapsed_ms = control.elapsed_ms(self._clock())
            if self._barge_in.should_interrupt(elapsed_ms):
                control.abort()
                self._call_metrics.total_interruptions += 1
                self._log.info("Barge-in: caller audio during playback", elapsed_ms=round(elapsed_ms, 1))
        await self._forward_audio(event.payload)

    async def _forward_audio(self, audio: bytes) -> None:
        if not audio:
            return
        recognizer = self._recognizer
        if recognizer is None or not recognizer.is_connected:
            self._call_metrics.media_dropped += 1
            return
        if not self._logged_first_media:
            self._logged_first_media = True
            self._log.info("Inbound media received", bytes=len(audio))
        await recognizer.send_audio(audio)

    async def _on_transcript(self, result: FinalTranscript) -> None:
        self._log.info("Final transcript", text=result.text, queued=self._turn_queue.qsize())
        self._turn_queue.put_nowait(result)

    async def _on_mark(self, event: TwilioMarkEvent) -> None:
        rtt_ms = self._protocol.handle_mark(event)
        call_state = self._protocol.call_state
        self._log.debug(
            "Telephony mark ack",
            mark_name=event.name,
            mark_rtt_ms=round(rtt_ms, 2),
            avg_mark_rtt_ms=round(call_state.avg_mark_rtt_ms, 2) if call_state else 0.0,
        )

    async def _on_recognizer_error(self, message: str) -> None:
        self._log.error("Recognizer error", error=message)

    async def _on_recognizer_closed(self, _payload: Any = None) -> None:
        if not self.config.recognizer_loss_fatal:
            self._log.warning("Recognizer closed; continuing without transcription")
            return
        self._log.error("Recognizer closed; ending call")
        # Runs outside the recognizer's receive task, which close() tears down.
        self._close_task = asyncio.create_task(self.close(reason="recognizer_closed"))

    async def _on_stop(self, reason: Any = None) -> None:
        if isinstance(reason, dict):
            reason = "stop"
        reason = reason or "stop"

        self._state = TurnState.CLOSED
        self._log.info("Closing call", reason=reason)

        if self._speaking is not None:
            self._speaking.abort()

        current = asyncio.current_task()
        tasks = [
            task for task in (self._turn_worker_task, self._recognizer_task)
            if task is not None and not task.done() and task is not current
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._recognizer is not None:
            try:
                await self._recognizer.disconnect()
            except Exception as e:
                self._log.warning("Error closing recognizer", error=str(e))
        for component in (self._tts.stop, self._llm.close):
            try:
                await component()
            except Exception as e:
                self._log.warning("Error releasing session component", error=str(e))

        self._protocol.handle_stop()
        self._call_metrics.end_time = time.time()

        call_state = self._protocol.call_state
        metrics = self._call_metrics.to_dict()
        metrics["mark_rtt_ms"] = round(call_state.avg_mark_rtt_ms, 2) if call_state else 0.0
        self._log.info("Call closed", reason=reason, metrics=metrics)

        if self._on_closed is not None:
            try:
                await self._on_closed(self._call_id)
            except Exception as e:
                self._log.warning("Session release callback failed", error=str(e))

    # ------------------------------------------------------------------
    # Recognizer callbacks
    # ------------------------------------------------------------------

    async def _recognizer_transcript(self, result: FinalTranscript) -> None:
        await self.dispatch(SessionEvent.TRANSCRIPT, result)

    async def _recognizer_error(self, message: str) -> None:
        await self.dispatch(SessionEvent.RECOGNIZER_ERROR, message)

    async def _recognizer_closed(self) -> None:
        await self.dispatch(SessionEvent.RECOGNIZER_CLOSED)

    # ------------------------------------------------------------------
    # Turn processing
    # ------------------------------------------------------------------

    async def _turn_worker(self) -> None:
        """Background worker that processes queued final transcripts sequentially."""
        try:
            while self._state != TurnState.CLOSED:
                transcript = await self._turn_queue.get()
                try:
                    await self._run_turn(transcript)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._log.error("Turn failed", error_type=type(e).__name__, error=str(e))
                finally:
                    self._turn_queue.task_done()
        except asyncio.CancelledError:
            pass

    async def _run_turn(self, transcript: FinalTranscript) -> Optional[DeliveryResult]:
        """Run a single conversation turn: reply, synthesize, play."""
        self._current_turn += 1
        turn = TurnMetrics(turn_id=self._current_turn, start_time=time.time())

        reply = await self._llm.reply(transcript.text)
        turn.llm_ms = self._llm.last_latency_ms
        self._log.info("Reply ready", turn_id=turn.turn_id, reply=reply)

        frames = await self._tts.synthesize_frames(reply)
        turn.tts_ms = self._tts.last_latency_ms
        turn.frames_total = len(frames)

        if self._state == TurnState.CLOSED:
            return None

        control = SpeakingControl(started_at=self._clock())
        self._speaking = control
        self._state = TurnState.SPEAKING
        try:
            result = await deliver_frames(
                frames,
                control,
                self._send_frame,
                self._send_end_mark,
                cadence_ms=self.config.frame_duration_ms,
                sleep=self._sleep,
                log=self._log,
            )
        finally:
            if self._speaking is control:
                self._speaking = None
            if self._state == TurnState.SPEAKING:
                self._state = TurnState.LISTENING

        turn.frames_sent = result.frames_sent
        turn.was_interrupted = result.aborted
        turn.finalize()
        self._call_metrics.turns.append(turn)
        self._call_metrics.frames_sent += result.frames_sent

        self._log.info(
            "Turn completed",
            turn_id=turn.turn_id,
            llm_ms=round(turn.llm_ms, 2),
            tts_ms=round(turn.tts_ms, 2),
            frames_total=turn.frames_total,
            frames_sent=turn.frames_sent,
            was_interrupted=turn.was_interrupted,
            total_turn_ms=round(turn.total_turn_ms, 2),
        )
        return result

    async def _send_frame(self, frame: bytes) -> None:
        message = self._protocol.create_media(frame)
        if not message:
            # No stream SID yet: the frame has nowhere to go.
            return
        await self._send_message(message)

    async def _send_end_mark(self) -> None:
        message = self._protocol.create_mark()
        if message:
            await self._send_message(message)
