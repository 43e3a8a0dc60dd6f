"""
Pytest configuration and fixtures.
"""

import base64
import json
import os
import struct
from unittest.mock import patch

import numpy as np
import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_MODEL": "gpt-4o-mini",
        "BARGE_IN_ENABLED": "true",
        "BARGE_IN_GRACE_MS": "600",
        "TTS_FALLBACK": "tone",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.voicebridge.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample media message."""
    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })


def build_wav(
    samples,
    sample_rate: int = 8000,
    channels: int = 1,
    audio_format: int = 1,
    bits_per_sample: int = 16,
    data_size=None,
    extra_chunks=(),
) -> bytes:
    """Build a RIFF/WAVE container around raw interleaved samples."""
    if audio_format == 3:
        data = np.asarray(samples, dtype="<f4").tobytes()
    elif bits_per_sample == 16:
        data = np.asarray(samples, dtype="<i2").tobytes()
    else:
        data = bytes(samples)

    block_align = channels * bits_per_sample // 8
    fmt = struct.pack(
        "<HHIIHH",
        audio_format,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        bits_per_sample,
    )
    body = b"WAVE" + b"fmt " + struct.pack("<I", len(fmt)) + fmt
    for tag, payload in extra_chunks:
        body += tag + struct.pack("<I", len(payload)) + payload
        if len(payload) % 2:
            body += b"\x00"
    declared = len(data) if data_size is None else data_size
    body += b"data" + struct.pack("<I", declared) + data
    return b"RIFF" + struct.pack("<I", len(body)) + body


@pytest.fixture
def wav_builder():
    """Factory for in-memory WAV containers."""
    return build_wav
