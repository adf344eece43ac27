from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


TtsProviderName = Literal["openai", "silent"]

DEFAULT_VOICE_MAP: dict[str, str] = {
    "Hanna": "nova",
    "Abram": "onyx",
}

# Models that accept a free-form style instruction alongside the text.
INSTRUCTION_MODELS = frozenset({"gpt-4o-mini-tts"})


@dataclass(frozen=True)
class TtsConfig:
    provider: TtsProviderName = "openai"
    model: str = "tts-1"
    silence_seconds: float = 3.0
    sample_rate: int = 44100
    voices: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_VOICE_MAP))

    @property
    def test_mode(self) -> bool:
        return self.provider == "silent"

    @property
    def accepts_instructions(self) -> bool:
        return self.model in INSTRUCTION_MODELS
