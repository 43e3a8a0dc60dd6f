"""
Telephony Media Streams WebSocket protocol handler.

The telephony peer sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid and callSid
- media: Audio data as base64 mu-law 8kHz (160 bytes per 20ms)
- mark: Playback marker acknowledgment
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- mark: Request playback acknowledgment (sent once per completed utterance)
"""

import base64
import binascii
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    """Telephony WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed start event."""
    stream_sid: str
    call_sid: str = ""
    account_sid: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from a telephony message."""
        start = message.get("start") or {}
        return cls(
            # streamSid is top-level in current payloads; older ones nest it under start.
            stream_sid=message.get("streamSid") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
        )


@dataclass
class TwilioMediaEvent:
    """Parsed media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from a telephony message."""
        media = message.get("media") or {}
        payload_b64 = media.get("payload", "")

        try:
            payload = base64.b64decode(payload_b64)
        except (binascii.Error, TypeError, ValueError):
            payload = b""

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=int(media.get("chunk", 0) or 0),
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    """Parsed mark event."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        """Parse from a telephony message."""
        mark = message.get("mark") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=mark.get("name", ""),
        )


@dataclass
class CallState:
    """Stream-level state for an active call."""
    stream_sid: str = ""
    call_sid: str = ""
    account_sid: str = ""
    is_active: bool = True
    utterance_sequence: int = 0
    frames_sent: int = 0
    pending_marks: Dict[str, float] = field(default_factory=dict)  # mark_name -> send_time
    mark_rtt_samples: List[float] = field(default_factory=list)  # RTT samples in ms

    def next_utterance(self) -> int:
        """Get next sequence number for end-of-utterance marks."""
        self.utterance_sequence += 1
        return self.utterance_sequence

    @property
    def avg_mark_rtt_ms(self) -> float:
        """Average mark round-trip time in ms."""
        if not self.mark_rtt_samples:
            return 0.0
        return sum(self.mark_rtt_samples) / len(self.mark_rtt_samples)


def parse_twilio_message(raw_message: str) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw telephony WebSocket message.

    Args:
        raw_message: Raw JSON string (or bytes)

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse telephony message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Invalid JSON: expected an object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        logger.warning("Unknown telephony event type", event_type=event_type_str)
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    elif event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    elif event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    else:
        return event_type, message


def create_media_message(
    stream_sid: str,
    audio_payload: bytes,
) -> str:
    """
    Create an outbound media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes (should be 160 bytes for 20ms)

    Returns:
        JSON string to send to the telephony peer
    """
    payload_b64 = base64.b64encode(audio_payload).decode("utf-8")

    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": payload_b64
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_mark_message(stream_sid: str, name: str) -> str:
    """
    Create an outbound mark message.

    Marks are used to get acknowledgment when audio has been played.

    Args:
        stream_sid: The stream SID
        name: Unique name for this mark

    Returns:
        JSON string to send to the telephony peer
    """
    message = {
        "event": "mark",
        "streamSid": stream_sid,
        "mark": {
            "name": name
        }
    }

    return encoder.encode(message).decode("utf-8")


class TwilioProtocolHandler:
    """
    High-level handler for the telephony WebSocket protocol.

    Manages stream state and builds outbound messages. Nothing can be sent
    until a start event has provided the stream SID.
    """

    def __init__(self):
        self.call_state: Optional[CallState] = None

    @property
    def stream_sid(self) -> str:
        """Get the current stream SID."""
        return self.call_state.stream_sid if self.call_state else ""

    def handle_start(self, event: TwilioStartEvent) -> None:
        """Handle a start event and initialize stream state."""
        if self.call_state and self.call_state.stream_sid:
            logger.warning(
                "Duplicate start event ignored",
                stream_sid=self.call_state.stream_sid,
                new_stream_sid=event.stream_sid,
            )
            return
        self.call_state = CallState(
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
            account_sid=event.account_sid,
        )
        logger.info(
            "Stream started",
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
        )

    def handle_stop(self) -> None:
        """Handle a stop event."""
        if self.call_state:
            self.call_state.is_active = False
            logger.info(
                "Stream stopped",
                stream_sid=self.call_state.stream_sid,
                call_sid=self.call_state.call_sid,
            )

    def handle_mark(self, event: TwilioMarkEvent) -> float:
        """
        Handle a mark acknowledgment and calculate RTT.

        Returns:
            Round-trip time in ms, or 0 if mark not found
        """
        rtt_ms = 0.0
        if self.call_state:
            send_time = self.call_state.pending_marks.pop(event.name, None)
            if send_time:
                rtt_ms = (time.time() - send_time) * 1000
                self.call_state.mark_rtt_samples.append(rtt_ms)
                # Keep only last 20 samples
                if len(self.call_state.mark_rtt_samples) > 20:
                    self.call_state.mark_rtt_samples.pop(0)
            logger.debug("Mark acknowledged", mark_name=event.name, rtt_ms=round(rtt_ms, 2))
        return rtt_ms

    def create_media(self, frame: bytes) -> str:
        """
        Create a media message for one frame.

        Returns "" when no stream SID is known yet or the stream has stopped;
        such frames are dropped.
        """
        if not self.call_state or not self.call_state.stream_sid or not self.call_state.is_active:
            return ""
        self.call_state.frames_sent += 1
        return create_media_message(self.call_state.stream_sid, frame)

    def create_mark(self, name: Optional[str] = None) -> str:
        """
        Create a mark message.

        Args:
            name: Optional mark name (auto-generated `utt_<n>` if not provided)

        Returns:
            JSON message to send
        """
        if not self.call_state or not self.call_state.stream_sid or not self.call_state.is_active:
            return ""

        if name is None:
            name = f"utt_{self.call_state.next_utterance()}"

        self.call_state.pending_marks[name] = time.time()  # Store send time for RTT calculation
        return create_mark_message(self.call_state.stream_sid, name)
