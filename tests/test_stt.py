"""
Tests for the Deepgram recognizer bridge.
"""

import asyncio
import json
from dataclasses import replace
from unittest.mock import AsyncMock, patch

import pytest

from src.voicebridge.config import get_config
from src.voicebridge.stt import (
    CLOSE_STREAM_MESSAGE,
    KEEPALIVE_MESSAGE,
    DeepgramSTT,
    FinalTranscript,
    adapt_transcript_message,
)


def _results(text: str, is_final: bool = True, speech_final: bool = False) -> dict:
    return {
        "type": "Results",
        "is_final": is_final,
        "speech_final": speech_final,
        "channel": {"alternatives": [{"transcript": text, "confidence": 0.93}]},
    }


class FakeSocket:
    """Minimal stand-in for a websockets client connection."""

    def __init__(self, messages=()):
        self._messages = list(messages)
        self.sent = []
        self.closed = False

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for message in self._messages:
            yield message

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True


class TestTranscriptAdapter:
    """Tests for adapt_transcript_message."""

    def test_final_result(self):
        result = adapt_transcript_message(_results("hello there"))
        assert isinstance(result, FinalTranscript)
        assert result.text == "hello there"
        assert result.confidence == pytest.approx(0.93)

    def test_speech_final_counts_as_final(self):
        result = adapt_transcript_message(_results("hi", is_final=False, speech_final=True))
        assert result is not None and result.text == "hi"

    def test_interim_is_discarded(self):
        assert adapt_transcript_message(_results("hel", is_final=False)) is None

    def test_empty_transcript_is_discarded(self):
        assert adapt_transcript_message(_results("   ")) is None

    def test_flat_shape(self):
        result = adapt_transcript_message({"transcript": " yes please ", "is_final": True})
        assert result.text == "yes please"

    def test_non_dict(self):
        assert adapt_transcript_message(["nope"]) is None

    def test_metadata_message(self):
        assert adapt_transcript_message({"type": "Metadata", "request_id": "x"}) is None


class TestDeepgramSTT:
    """Tests for DeepgramSTT."""

    def test_url_requests_mulaw_8k_without_interim(self):
        url = DeepgramSTT().url
        assert "encoding=mulaw" in url
        assert "sample_rate=8000" in url
        assert "channels=1" in url
        assert "interim_results=false" in url
        assert "endpointing=300" in url

    @pytest.mark.asyncio
    async def test_send_audio_noop_when_not_connected(self):
        stt = DeepgramSTT()
        stt._ws = AsyncMock()

        await stt.send_audio(b"\xff" * 160)

        stt._ws.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_audio_forwards_raw_bytes(self):
        stt = DeepgramSTT()
        stt._is_connected = True
        stt._ws = AsyncMock()

        frame = b"\x7f" * 160
        await stt.send_audio(frame)

        stt._ws.send.assert_awaited_once_with(frame)
        assert stt.metrics.total_audio_ms == pytest.approx(20.0)

    @pytest.mark.asyncio
    async def test_connect_without_key_returns_false(self):
        stt = DeepgramSTT(config=replace(get_config(), deepgram_api_key=""))
        with patch("src.voicebridge.stt.websockets.connect", AsyncMock()) as connect:
            assert await stt.connect() is False
        connect.assert_not_awaited()
        assert stt.is_connected is False

    @pytest.mark.asyncio
    async def test_connect_failure_is_bounded(self):
        stt = DeepgramSTT(config=replace(get_config(), deepgram_connect_attempts=2))
        with patch("src.voicebridge.stt.websockets.connect", AsyncMock(side_effect=OSError("refused"))) as connect:
            assert await stt.connect() is False
        assert connect.await_count == 2
        assert stt.is_connected is False

    @pytest.mark.asyncio
    async def test_connect_receives_final_transcripts_and_reports_close(self):
        on_transcript = AsyncMock()
        on_close = AsyncMock()
        socket = FakeSocket([
            json.dumps(_results("hel", is_final=False)),
            json.dumps(_results("hello")),
        ])
        stt = DeepgramSTT(on_transcript=on_transcript, on_close=on_close)

        with patch("src.voicebridge.stt.websockets.connect", AsyncMock(return_value=socket)) as connect:
            assert await stt.connect() is True
            await asyncio.wait_for(stt._receive_task, timeout=1.0)

        headers = connect.await_args.kwargs["additional_headers"]
        assert headers["Authorization"] == "Token test_deepgram_key"
        on_transcript.assert_awaited_once()
        assert on_transcript.await_args.args[0].text == "hello"
        assert stt.metrics.discarded_interim == 1
        # Remote end closed the stream: reported once.
        on_close.assert_awaited_once()
        assert stt.is_connected is False

        await stt.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_sends_close_stream_without_close_callback(self):
        on_close = AsyncMock()
        stt = DeepgramSTT(on_close=on_close)
        stt._is_connected = True
        socket = FakeSocket()
        stt._ws = socket

        await stt.disconnect()

        assert socket.sent == [CLOSE_STREAM_MESSAGE]
        assert socket.closed is True
        assert stt.is_connected is False
        on_close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disconnect_tolerates_close_errors(self):
        stt = DeepgramSTT()
        stt._is_connected = True
        stt._ws = AsyncMock()
        stt._ws.send.side_effect = ConnectionError("gone")
        stt._ws.close.side_effect = ConnectionError("gone")

        await stt.disconnect()

        assert stt.is_connected is False

    @pytest.mark.asyncio
    async def test_keepalive_sent_on_interval(self):
        stt = DeepgramSTT(config=replace(get_config(), deepgram_keepalive_seconds=0))
        stt._is_connected = True
        stt._ws = AsyncMock()

        async def send(data):
            if stt._ws.send.await_count >= 3:
                stt._is_connected = False

        stt._ws.send.side_effect = send

        await asyncio.wait_for(stt._keepalive_loop(), timeout=1.0)

        assert stt.metrics.keepalives_sent == 3
        assert all(call.args[0] == KEEPALIVE_MESSAGE for call in stt._ws.send.await_args_list)

    @pytest.mark.asyncio
    async def test_keepalive_failure_is_not_fatal(self):
        stt = DeepgramSTT(config=replace(get_config(), deepgram_keepalive_seconds=0))
        stt._is_connected = True
        stt._ws = AsyncMock()

        async def send(data):
            if stt._ws.send.await_count == 1:
                raise ConnectionError("blip")
            stt._is_connected = False

        stt._ws.send.side_effect = send

        await asyncio.wait_for(stt._keepalive_loop(), timeout=1.0)

        assert stt.metrics.keepalive_failures == 1
        assert stt.metrics.keepalives_sent == 1

    @pytest.mark.asyncio
    async def test_error_message_reaches_error_callback(self):
        on_error = AsyncMock()
        on_transcript = AsyncMock()
        stt = DeepgramSTT(on_transcript=on_transcript, on_error=on_error)

        await stt._handle_message({"type": "Error", "description": "bad audio"})

        on_error.assert_awaited_once_with("bad audio")
        on_transcript.assert_not_awaited()
