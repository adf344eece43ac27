from __future__ import annotations

import io
import os
from typing import Any

import numpy as np
import requests
import soundfile as sf

from modules.errors import SynthesisFailed, TtsNotConfigured
from modules.tts_base import TtsProvider
from modules.tts_types import TtsConfig

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _to_mono_pcm16(audio: bytes) -> bytes:
    # The combiner relies on a canonical 44-byte PCM header, which the
    # upstream WAV stream does not always have.
    try:
        samples, sr = sf.read(io.BytesIO(audio), dtype="float32")
    except RuntimeError as exc:
        raise SynthesisFailed(f"TTS returned undecodable audio: {exc}") from exc
    if isinstance(samples, np.ndarray) and samples.ndim > 1:
        samples = samples.mean(axis=1)
    out = io.BytesIO()
    sf.write(out, np.asarray(samples, dtype=np.float32), int(sr), format="WAV", subtype="PCM_16")
    return out.getvalue()


class OpenAiTtsProvider(TtsProvider):
    name = "openai"

    def __init__(
        self,
        config: TtsConfig | None = None,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(config)
        self.api_key = (api_key if api_key is not None else os.environ.get("OPENAI_API_KEY", "")).strip()
        base = base_url or os.environ.get("OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL).strip()
        self.base_url = (base or DEFAULT_OPENAI_BASE_URL).rstrip("/")
        self.timeout = _env_float("TTS_TIMEOUT_SECONDS", 60.0)
        self._session = session or requests.Session()

    def synthesize(self, text: str, speaker: str, instruction: str = "") -> bytes:
        voice = self.resolve_voice(speaker)
        if not self.api_key:
            raise TtsNotConfigured(
                "OPENAI_API_KEY is not configured.",
                remediation=(
                    "Add OPENAI_API_KEY to your .env file, or set "
                    "MOCK_AUDIO_GENERATION=true to test without API costs."
                ),
            )

        payload: dict[str, Any] = {
            "model": self.config.model,
            "input": text,
            "voice": voice,
            "response_format": "wav",
        }
        if instruction and self.config.accepts_instructions:
            payload["instructions"] = instruction

        try:
            response = self._session.post(
                f"{self.base_url}/audio/speech",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise SynthesisFailed(f"TTS request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            body = response.text
            raise SynthesisFailed(
                f"TTS API error: {response.status_code} - {body[:300]}",
                status_code=response.status_code,
                body=body,
            )
        return _to_mono_pcm16(response.content)
