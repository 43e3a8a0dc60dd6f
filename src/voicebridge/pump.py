"""
Outbound frame pump.

Delivers pre-encoded mu-law frames to the telephony peer at a fixed cadence so
the peer receives real-time paced audio instead of a burst. Cancellation is
cooperative: the pump reads `SpeakingControl.aborted` before every frame and
stops immediately when it is set. Only the session writes it.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

import structlog

from src.voicebridge.audio import FRAME_DURATION_MS

logger = structlog.get_logger(__name__)

LOG_EVERY_FRAMES = 50


@dataclass
class SpeakingControl:
    """Cancellation handle for exactly one outbound utterance."""
    started_at: float = field(default_factory=time.monotonic)
    aborted: bool = False

    def abort(self) -> None:
        self.aborted = True

    def elapsed_ms(self, now: float) -> float:
        return (now - self.started_at) * 1000


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one pump run."""
    frames_sent: int
    aborted: bool


async def deliver_frames(
    frames: Sequence[bytes],
    control: SpeakingControl,
    send_frame: Callable[[bytes], Awaitable[None]],
    send_mark: Callable[[], Awaitable[None]],
    *,
    cadence_ms: int = FRAME_DURATION_MS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    log: Any = None,
) -> DeliveryResult:
    """
    Send `frames` in order, one every `cadence_ms`.

    - `control.aborted` is checked before each frame; when set, delivery stops
      and the result is reported as aborted.
    - A failing `send_frame` ends delivery (aborted, not retried).
    - On completion one end-of-utterance mark is sent via `send_mark`.

    An empty sequence sends only the mark.
    """
    log = log or logger
    cadence_s = cadence_ms / 1000.0
    sent = 0

    for frame in frames:
        if control.aborted:
            log.info("Playback aborted", frames_sent=sent, frames_total=len(frames))
            return DeliveryResult(frames_sent=sent, aborted=True)

        try:
            await send_frame(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(
                "Frame send failed; ending playback",
                frames_sent=sent,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(frames_sent=sent, aborted=True)

        if sent % LOG_EVERY_FRAMES == 0:
            log.debug("Frames sent", frames_sent=sent)
        sent += 1

        await sleep(cadence_s)

    # Abort can land during the wait after the last frame.
    if control.aborted:
        log.info("Playback aborted", frames_sent=sent, frames_total=len(frames))
        return DeliveryResult(frames_sent=sent, aborted=True)

    try:
        await send_mark()
    except asyncio.CancelledError:
        raise
    except Exception as e:
        log.warning("End-of-utterance mark failed", error=str(e))
        return DeliveryResult(frames_sent=sent, aborted=True)

    log.info("Playback completed", frames_sent=sent)
    return DeliveryResult(frames_sent=sent, aborted=False)
