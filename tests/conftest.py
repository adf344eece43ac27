"""Shared pytest fixtures for the podcast backend test suite."""

from __future__ import annotations

import copy
import json
import os
import tempfile
from typing import Any

import pytest

# main.py mounts the audio directory at import time.
os.environ.setdefault("AUDIO_OUTPUT_DIR", tempfile.mkdtemp(prefix="podcast-audio-"))


SAMPLE_OUTLINE: dict[str, Any] = {
    "overview": {
        "title": "AI Revolution in Healthcare",
        "description": "How machine learning is changing diagnosis and patient care",
        "totalDuration": "12-15 minutes",
        "targetAudience": "Curious listeners interested in medicine",
        "tone": "Conversational and engaging",
    },
    "sections": [
        {
            "id": "section_1",
            "title": "Reading Scans with Neural Networks",
            "description": "How image models spot tumours on radiology scans",
            "duration": "3 minutes",
            "keyPoints": [
                "Models flag suspicious regions for radiologists",
                "Accuracy depends on diverse training scans",
                "Doctors still make the final call",
            ],
        },
        {
            "id": "section_2",
            "title": "Predicting Hospital Readmissions",
            "description": "Using patient records to forecast who needs follow-up care",
            "duration": "3 minutes",
            "keyPoints": [
                "Readmission risk scores guide discharge planning",
                "Biased records lead to biased predictions",
                "Nurses act on the alerts",
            ],
        },
        {
            "id": "section_3",
            "title": "Drug Discovery at Machine Speed",
            "description": "Protein folding models shorten the search for new medicines",
            "duration": "3 minutes",
            "keyPoints": [
                "Folding predictions narrow candidate molecules",
                "Lab trials remain the slow step",
                "Startups race big pharma",
            ],
        },
    ],
    "finalThoughts": {
        "title": "What Patients Should Expect Next",
        "description": "Practical takeaways for listeners visiting a clinic",
        "duration": "2-3 minutes",
        "keyTakeaways": [
            "Ask how software supports your diagnosis",
            "Human review stays essential",
            "Expect faster results in the coming years",
        ],
    },
}


def sample_outline() -> dict[str, Any]:
    return copy.deepcopy(SAMPLE_OUTLINE)


def section_script(n: int) -> list[str]:
    return [
        f"A: Section {n} opens with a surprising fact about hospitals.",
        f"B: Wait, really? Tell me more about section {n}!",
        f"A: Sure, here is the detail everyone misses in section {n}.",
    ]


def compiled_response(section_count: int = 4, speakers: tuple[str, str] = ("A", "B")) -> str:
    lines = [
        {
            "speaker": speakers[0],
            "text": "Welcome to the show! Today we dig into how hospitals are quietly "
            "changing the way they diagnose, predict and discover, and why it matters "
            "for every single patient who walks through the door.",
            "instruction": "bright and engaging with natural pauses",
        }
    ]
    for n in range(1, section_count + 1):
        for raw in section_script(n):
            label, text = raw.split(":", 1)
            lines.append(
                {
                    "speaker": speakers[0] if label == "A" else speakers[1],
                    "text": text.strip(),
                    "instruction": "warm and conversational with slight excitement",
                }
            )
    return json.dumps(
        {
            "podcast": {
                "title": "AI Revolution in Healthcare",
                "description": "Two hosts unpack medical machine learning",
                "estimatedDuration": "12-15 minutes",
                "speakers": {"A": "Hanna", "B": "Abram"},
                "script": lines,
            }
        }
    )


class FakeChatClient:
    """Stands in for ChatClient; queued items that are exceptions get raised."""

    def __init__(self, complete: list[Any] | None = None, stream: list[Any] | None = None) -> None:
        self.complete_queue = list(complete or [])
        self.stream_queue = list(stream or [])
        self.complete_calls: list[tuple[list[dict[str, str]], Any]] = []
        self.stream_calls: list[tuple[list[dict[str, str]], Any]] = []

    def complete(self, messages, options=None) -> str:
        self.complete_calls.append((messages, options))
        if not self.complete_queue:
            raise AssertionError("unexpected complete() call")
        item = self.complete_queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def stream_complete(self, messages, options=None):
        self.stream_calls.append((messages, options))
        if not self.stream_queue:
            raise AssertionError("unexpected stream_complete() call")
        item = self.stream_queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        for chunk in item:
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk


def happy_client(section_count: int = 3) -> FakeChatClient:
    streams = []
    for n in range(1, section_count + 2):
        text = "\n".join(section_script(n))
        half = len(text) // 2
        streams.append([text[:half], text[half:]])
    return FakeChatClient(
        complete=[json.dumps(sample_outline()), compiled_response(section_count + 1)],
        stream=streams,
    )


@pytest.fixture(autouse=True)
def mock_env_vars(monkeypatch):
    """Minimum env so modules import without real services."""
    monkeypatch.setenv("UPSTAGE_API_KEY", "test-upstage-key")
    monkeypatch.setenv("LLM_BASE_URL", "http://localhost:9999/v1")
    for name in (
        "TAVILY_API_KEY",
        "OPENAI_API_KEY",
        "MOCK_AUDIO_GENERATION",
        "MOCK_AUDIO_SECONDS",
        "USE_FIRESTORE",
        "OUTLINE_MAX_ATTEMPTS",
        "OUTLINE_RETRY_DELAY_SECONDS",
        "TTS_MAX_WORKERS",
        "OPENAI_TTS_MODEL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def outline_dict() -> dict[str, Any]:
    return sample_outline()
