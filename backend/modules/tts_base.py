from __future__ import annotations

from abc import ABC, abstractmethod

from modules.errors import UnknownSpeaker
from modules.tts_types import TtsConfig


class TtsProvider(ABC):
    name: str

    def __init__(self, config: TtsConfig | None = None) -> None:
        self.config = config or TtsConfig()

    def resolve_voice(self, speaker: str) -> str:
        voice = self.config.voices.get((speaker or "").strip())
        if not voice:
            raise UnknownSpeaker(speaker)
        return voice

    @abstractmethod
    def synthesize(self, text: str, speaker: str, instruction: str = "") -> bytes:
        """Return one complete WAV file for ``text`` spoken by ``speaker``."""
        raise NotImplementedError
