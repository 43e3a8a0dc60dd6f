from __future__ import annotations

from abc import ABC, abstractmethod


class TTSProvider(ABC):
    """Text in, RIFF/WAVE container bytes out."""

    @abstractmethod
    async def synthesize_wav(self, text: str) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        return None
