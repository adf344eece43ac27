from __future__ import annotations

from modules.tts_base import TtsProvider
from modules.wav import silent_wav


class SilentTtsProvider(TtsProvider):
    """Test-mode provider: fixed-length mono 16-bit silence, no network."""

    name = "silent"

    def synthesize(self, text: str, speaker: str, instruction: str = "") -> bytes:
        # Unknown speakers fail the same way as with a real provider.
        self.resolve_voice(speaker)
        return silent_wav(
            self.config.silence_seconds,
            sample_rate=self.config.sample_rate,
            channels=1,
            bits_per_sample=16,
        )
