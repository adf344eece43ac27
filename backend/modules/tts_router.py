from __future__ import annotations

import os

from modules.errors import TtsNotConfigured
from modules.tts_base import TtsProvider
from modules.tts_openai import OpenAiTtsProvider
from modules.tts_silent import SilentTtsProvider
from modules.tts_types import TtsConfig


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def mock_mode_enabled() -> bool:
    raw = os.environ.get("MOCK_AUDIO_GENERATION", "false").strip().lower()
    return raw in {"1", "true", "yes", "on"}


def load_config() -> TtsConfig:
    return TtsConfig(
        provider="silent" if mock_mode_enabled() else "openai",
        model=os.environ.get("OPENAI_TTS_MODEL", "tts-1").strip() or "tts-1",
        silence_seconds=max(0.0, _env_float("MOCK_AUDIO_SECONDS", 3.0)),
    )


def ensure_tts_configured() -> None:
    if mock_mode_enabled():
        return
    if not os.environ.get("OPENAI_API_KEY", "").strip():
        raise TtsNotConfigured(
            "OPENAI_API_KEY not configured",
            remediation=(
                "Add OPENAI_API_KEY to your .env file. To test without API costs, "
                "add MOCK_AUDIO_GENERATION=true instead. Restart the server afterwards."
            ),
        )


def get_tts_provider(config: TtsConfig | None = None) -> TtsProvider:
    config = config or load_config()
    if config.test_mode:
        return SilentTtsProvider(config)
    return OpenAiTtsProvider(config)


__all__ = [
    "TtsConfig",
    "ensure_tts_configured",
    "get_tts_provider",
    "load_config",
    "mock_mode_enabled",
]
