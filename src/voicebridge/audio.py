"""
Audio conversion utilities for the voice bridge.

Telephony side is fixed: 8kHz mono mu-law, 20ms frames (160 bytes).
Synthesized speech arrives as a RIFF/WAVE container (PCM16 or float32 at any
rate, any channel count) and goes through:

    decode_container -> resample (linear) -> mu-law companding -> fixed frames

Everything here is pure numpy; no I/O and no shared state.
"""

import math
import struct
from typing import Generator, List, Tuple

import numpy as np

from src.voicebridge.errors import MalformedContainer, UnsupportedFormat

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms

# G.711 mu-law
ULAW_BIAS = 0x84
ULAW_CLIP = 32635
ULAW_SILENCE = 0xFF
ULAW_ZERO_SENTINEL = 0x02

WAVE_FORMAT_PCM = 0x0001
WAVE_FORMAT_IEEE_FLOAT = 0x0003
WAVE_FORMAT_EXTENSIBLE = 0xFFFE


# ---------------------------------------------------------------------------
# Container decoding
# ---------------------------------------------------------------------------

def _iter_chunks(buf: bytes) -> Generator[Tuple[bytes, int, int], None, None]:
    """Yield (tag, body_offset, declared_size) for each chunk after the RIFF header."""
    offset = 12
    while offset + 8 <= len(buf):
        tag = buf[offset:offset + 4]
        (size,) = struct.unpack_from("<I", buf, offset + 4)
        body = offset + 8
        yield tag, body, size
        # Chunks are word aligned: odd sizes carry one pad byte.
        offset = body + size + (size & 1)


def decode_container(wav_bytes: bytes) -> Tuple[int, np.ndarray]:
    """
    Decode a RIFF/WAVE byte string into (sample_rate, mono float32 samples).

    Supports 16-bit signed PCM and 32-bit IEEE float. Multi-channel input is
    downmixed to mono by averaging the first channel pair.

    Raises:
        MalformedContainer: header, `fmt ` chunk or `data` chunk missing
        UnsupportedFormat: any other encoding/bit-depth combination
    """
    if not wav_bytes or len(wav_bytes) < 12:
        raise MalformedContainer("Container too short")
    if wav_bytes[0:4] != b"RIFF" or wav_bytes[8:12] != b"WAVE":
        raise MalformedContainer("Not a RIFF/WAVE container")

    fmt = None
    data_offset = None
    data_size = 0

    for tag, body, size in _iter_chunks(wav_bytes):
        if tag == b"fmt ":
            if body + 16 > len(wav_bytes):
                raise MalformedContainer("Truncated fmt chunk")
            audio_format, channels, sample_rate = struct.unpack_from("<HHI", wav_bytes, body)
            (bits_per_sample,) = struct.unpack_from("<H", wav_bytes, body + 14)
            if audio_format == WAVE_FORMAT_EXTENSIBLE and size >= 26 and body + 26 <= len(wav_bytes):
                # Sub-format GUID starts at byte 24; its first two bytes are the format code.
                (audio_format,) = struct.unpack_from("<H", wav_bytes, body + 24)
            fmt = (audio_format, channels, sample_rate, bits_per_sample)
        elif tag == b"data":
            data_offset = body
            data_size = size

    if fmt is None or data_offset is None:
        raise MalformedContainer("Missing fmt or data chunk")

    audio_format, channels, sample_rate, bits_per_sample = fmt
    if channels < 1 or sample_rate <= 0:
        raise MalformedContainer(f"Invalid fmt chunk: channels={channels} rate={sample_rate}")

    if audio_format == WAVE_FORMAT_PCM and bits_per_sample == 16:
        dtype = np.dtype("<i2")
        scale = 32768.0
    elif audio_format == WAVE_FORMAT_IEEE_FLOAT and bits_per_sample == 32:
        dtype = np.dtype("<f4")
        scale = 1.0
    else:
        raise UnsupportedFormat(f"Unsupported WAV: fmt={audio_format} bits={bits_per_sample}")

    # Streamed containers often declare a placeholder data size; read what is there.
    available = len(wav_bytes) - data_offset
    size = min(data_size, available)
    block_align = channels * dtype.itemsize
    size -= size % block_align

    raw = np.frombuffer(wav_bytes, dtype=dtype, count=size // dtype.itemsize, offset=data_offset)
    samples = raw.astype(np.float32) / np.float32(scale)

    if channels == 1:
        return int(sample_rate), samples

    interleaved = samples.reshape(-1, channels)
    mono = (interleaved[:, 0] + interleaved[:, 1]) * np.float32(0.5)
    return int(sample_rate), mono.astype(np.float32)


# ---------------------------------------------------------------------------
# Resampling
# ---------------------------------------------------------------------------

def resample(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """
    Linear-interpolation resampler for mono float samples.

    Output length is round(len * to_rate / from_rate) and values are clamped to
    [-1.0, 1.0]. Equal rates return the input unchanged.
    """
    if from_rate == to_rate:
        return samples

    n = len(samples)
    ratio = to_rate / from_rate
    out_len = int(math.floor(n * ratio + 0.5))
    if n == 0 or out_len == 0:
        return np.zeros(0, dtype=np.float32)

    src = np.asarray(samples, dtype=np.float64)
    x = np.arange(out_len, dtype=np.float64) / ratio
    x0 = np.minimum(np.floor(x).astype(np.int64), n - 1)
    x1 = np.minimum(x0 + 1, n - 1)
    t = x - x0
    out = src[x0] * (1.0 - t) + src[x1] * t
    return np.clip(out, -1.0, 1.0).astype(np.float32)


# ---------------------------------------------------------------------------
# mu-law companding
# ---------------------------------------------------------------------------

def linear16_to_ulaw_sample(sample: int) -> int:
    """Compand one signed 16-bit sample to a mu-law byte."""
    sign = 0x80 if sample < 0 else 0
    magnitude = min(abs(int(sample)), ULAW_CLIP) + ULAW_BIAS

    exponent = 7
    mask = 0x4000
    while (magnitude & mask) == 0 and exponent > 0:
        exponent -= 1
        mask >>= 1

    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    ulaw = ~(sign | (exponent << 4) | mantissa) & 0xFF
    # Some decoders mishandle the all-zero code.
    return ulaw if ulaw != 0 else ULAW_ZERO_SENTINEL


def encode_ulaw(samples: np.ndarray) -> np.ndarray:
    """Vectorized `linear16_to_ulaw_sample` over an int16-range array."""
    s = np.asarray(samples, dtype=np.int32)
    if s.size == 0:
        return np.zeros(0, dtype=np.uint8)

    sign = np.where(s < 0, 0x80, 0).astype(np.int32)
    magnitude = np.minimum(np.abs(s), ULAW_CLIP) + ULAW_BIAS
    # Bias guarantees bit 7 is the lowest possible MSB, so exponent = msb - 7.
    exponent = np.clip(np.floor(np.log2(magnitude)).astype(np.int32) - 7, 0, 7)
    mantissa = np.right_shift(magnitude, exponent + 3) & 0x0F
    ulaw = ~(sign | (exponent << 4) | mantissa) & 0xFF
    ulaw[ulaw == 0] = ULAW_ZERO_SENTINEL
    return ulaw.astype(np.uint8)


def decode_ulaw(codes: np.ndarray) -> np.ndarray:
    """Standard mu-law expansion back to int16."""
    u = ~np.asarray(codes, dtype=np.int32) & 0xFF
    sign = u & 0x80
    exponent = (u >> 4) & 0x07
    mantissa = u & 0x0F
    magnitude = (((mantissa << 3) + ULAW_BIAS) << exponent) - ULAW_BIAS
    return np.where(sign != 0, -magnitude, magnitude).astype(np.int16)


def linear16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit (little endian) to mu-law.

    Args:
        pcm_bytes: Linear PCM 16-bit bytes

    Returns:
        Mu-law encoded bytes
    """
    if not pcm_bytes:
        return b""
    return encode_ulaw(np.frombuffer(pcm_bytes, dtype="<i2")).tobytes()


def ulaw_to_linear16(ulaw_bytes: bytes) -> bytes:
    """
    Convert mu-law audio to linear PCM 16-bit (little endian).

    Args:
        ulaw_bytes: Raw mu-law encoded bytes

    Returns:
        Linear PCM 16-bit bytes
    """
    if not ulaw_bytes:
        return b""
    return decode_ulaw(np.frombuffer(ulaw_bytes, dtype=np.uint8)).astype("<i2").tobytes()


def float_to_ulaw(samples: np.ndarray) -> bytes:
    """Scale float samples in [-1, 1] to int16 and compand to mu-law bytes."""
    if len(samples) == 0:
        return b""
    scaled = np.floor(np.asarray(samples, dtype=np.float64) * 32767 + 0.5)
    pcm = np.clip(scaled, -32768, 32767).astype(np.int32)
    return encode_ulaw(pcm).tobytes()


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------

def frame_size(sample_rate: int = TWILIO_SAMPLE_RATE, frame_duration_ms: int = FRAME_DURATION_MS) -> int:
    """Bytes per mu-law frame (one byte per sample)."""
    return int(sample_rate * frame_duration_ms / 1000)


def chunk_audio(
    audio_bytes: bytes,
    chunk_size: int = TWILIO_FRAME_SIZE,
    pad_final: bool = True,
) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    For telephony we want 20ms frames = 160 bytes of mu-law at 8kHz.

    Args:
        audio_bytes: Raw mu-law bytes
        chunk_size: Size of each chunk in bytes (default: 160 for 20ms mu-law)
        pad_final: Pad a trailing short chunk with mu-law silence; otherwise yield it short

    Yields:
        Audio chunks in playback order
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        if pad_final and len(chunk) < chunk_size:
            chunk = chunk + bytes([ULAW_SILENCE]) * (chunk_size - len(chunk))
        yield chunk


def chunk_audio_list(
    audio_bytes: bytes,
    chunk_size: int = TWILIO_FRAME_SIZE,
    pad_final: bool = True,
) -> List[bytes]:
    """Chunk audio into fixed-size frames and return as a list."""
    return list(chunk_audio(audio_bytes, chunk_size, pad_final=pad_final))


def encode_frames(
    samples: np.ndarray,
    frame_duration_ms: int = FRAME_DURATION_MS,
    sample_rate: int = TWILIO_SAMPLE_RATE,
    pad_final: bool = True,
) -> List[bytes]:
    """
    Compand float samples (already at `sample_rate`) and slice them into frames.

    N samples with frame size F produce ceil(N / F) frames.
    """
    ulaw = float_to_ulaw(samples)
    return chunk_audio_list(ulaw, frame_size(sample_rate, frame_duration_ms), pad_final=pad_final)


def wav_to_frames(
    wav_bytes: bytes,
    frame_duration_ms: int = FRAME_DURATION_MS,
    pad_final: bool = True,
) -> List[bytes]:
    """Full synthesis bridge: WAV container -> 8kHz mu-law frames."""
    source_rate, samples = decode_container(wav_bytes)
    samples_8k = resample(samples, source_rate, TWILIO_SAMPLE_RATE)
    return encode_frames(samples_8k, frame_duration_ms, TWILIO_SAMPLE_RATE, pad_final=pad_final)


# ---------------------------------------------------------------------------
# Fallback audio
# ---------------------------------------------------------------------------

def silence_frames(count: int = 10, chunk_size: int = TWILIO_FRAME_SIZE) -> List[bytes]:
    """Explicit mu-law silence frames."""
    return [bytes([ULAW_SILENCE]) * chunk_size for _ in range(max(0, count))]


def tone_frames(
    duration_ms: int = 2000,
    frequency_hz: float = 600.0,
    *,
    amplitude: float = 0.75,
    fade_ms: int = 40,
    frame_duration_ms: int = FRAME_DURATION_MS,
    pad_final: bool = True,
) -> List[bytes]:
    """
    Audible sine tone with linear fade in/out, as mu-law frames.

    Played when synthesis fails so the caller (and whoever is debugging) hears
    that something went wrong instead of dead air.
    """
    total = int(round(TWILIO_SAMPLE_RATE * duration_ms / 1000))
    if total <= 0:
        return []

    n = np.arange(total, dtype=np.float64)
    tone = np.sin(2 * np.pi * frequency_hz * n / TWILIO_SAMPLE_RATE) * amplitude

    fade = int(round(TWILIO_SAMPLE_RATE * fade_ms / 1000))
    if fade > 0:
        envelope = np.ones(total, dtype=np.float64)
        ramp = np.minimum(n, total - 1 - n) / fade
        envelope = np.minimum(envelope, ramp)
        tone = tone * envelope

    return encode_frames(tone, frame_duration_ms, TWILIO_SAMPLE_RATE, pad_final=pad_final)
