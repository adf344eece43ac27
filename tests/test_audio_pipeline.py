from __future__ import annotations

import os
import threading

import pytest

from modules.audio_store import AudioStore
from modules.errors import AudioFormatMismatch, SegmentDownloadFailed
from modules.tts_silent import SilentTtsProvider
from modules.tts_types import TtsConfig
from modules.wav import read_wav_header, silent_wav
from pipeline import audio_generation_events, combine_podcast
from schemas import GeneratedSegment, ScriptLine


@pytest.fixture
def store(tmp_path):
    return AudioStore(str(tmp_path / "audio"))


def _provider(seconds: float = 0.05) -> SilentTtsProvider:
    return SilentTtsProvider(TtsConfig(provider="silent", silence_seconds=seconds))


def _script(*speakers: str) -> list[ScriptLine]:
    return [ScriptLine(speaker=s, text=f"Line {i} from {s}", instruction="warm") for i, s in enumerate(speakers)]


def _segment(store: AudioStore, name: str, audio: bytes, speaker: str = "Hanna") -> GeneratedSegment:
    stored = store.save_segment(name, audio)
    return GeneratedSegment(
        audio_url=stored.url,
        filename=stored.filename,
        metadata=ScriptLine(speaker=speaker, text="hi"),
        file_size=stored.size,
    )


class TestAudioGenerationEvents:
    @pytest.mark.parametrize("workers", [1, 3])
    def test_segments_complete_in_script_order(self, store, workers):
        events = list(
            audio_generation_events(
                _script("Hanna", "Abram", "Hanna", "Abram"),
                _provider(),
                store,
                session_id="session_t",
                max_workers=workers,
            )
        )

        assert events[0]["type"] == "progress"
        assert events[0]["data"]["totalSegments"] == 4
        complete = events[-1]
        assert complete["type"] == "complete"
        assert complete["data"]["successfulSegments"] == 4
        segments = complete["data"]["audioSegments"]
        assert [s["filename"] for s in segments] == [
            "session_t_segment_000_hanna.wav",
            "session_t_segment_001_abram.wav",
            "session_t_segment_002_hanna.wav",
            "session_t_segment_003_abram.wav",
        ]
        assert all(s["audioUrl"].startswith("/audio/segments/") for s in segments)
        assert sorted(e["data"]["segmentIndex"] for e in events if e["type"] == "segment_complete") == [0, 1, 2, 3]
        steps = [e["data"]["step"] for e in events if e["type"] == "progress" and "step" in e["data"]]
        assert any(step.startswith("Mock generating TTS for Hanna") for step in steps)

    def test_failing_line_does_not_stop_others(self, store):
        events = list(
            audio_generation_events(_script("Hanna", "Narrator", "Abram"), _provider(), store, max_workers=2)
        )

        errors = [e for e in events if e["type"] == "segment_error"]
        assert len(errors) == 1
        assert errors[0]["data"]["segmentIndex"] == 1
        assert errors[0]["data"]["error"] == "No voice configured for speaker: Narrator"
        assert errors[0]["data"]["metadata"]["speaker"] == "Narrator"
        complete = events[-1]["data"]
        assert complete["successfulSegments"] == 2
        assert complete["totalSegments"] == 3

    def test_cancelled_session_stops_submitting(self, store):
        cancel = threading.Event()
        cancel.set()

        events = list(
            audio_generation_events(_script("Hanna", "Abram"), _provider(), store, cancel_event=cancel)
        )

        assert [e["type"] for e in events] == ["progress"]
        assert os.listdir(os.path.join(store.root, "segments")) == []


class TestCombinePodcast:
    def test_two_three_second_segments(self, store):
        segments = [
            _segment(store, "a.wav", silent_wav(3)),
            _segment(store, "b.wav", silent_wav(3), speaker="Abram"),
        ]
        saved: list[tuple[str, dict]] = []

        combined = combine_podcast(
            segments, title="Quiet Show", store=store, test_mode=True, on_saved=lambda i, m: saved.append((i, m))
        )

        assert combined.duration_seconds == 6
        assert combined.segment_count == 2
        assert combined.filename.startswith("test_podcast_")
        assert combined.audio_url == f"/audio/podcasts/{combined.filename}"
        with open(os.path.join(store.root, "podcasts", combined.filename), "rb") as f:
            data = f.read()
        assert read_wav_header(data).data_size == 529200
        assert combined.file_size == len(data)

        podcast_id, metadata = saved[0]
        assert podcast_id == combined.audio_id
        assert metadata["title"] == "Quiet Show"
        assert [s["speaker"] for s in metadata["segments"]] == ["Hanna", "Abram"]
        assert os.listdir(os.path.join(store.root, "segments")) == []

    def test_metadata_save_failure_is_not_fatal(self, store):
        def broken(podcast_id, metadata):
            raise RuntimeError("firestore down")

        combined = combine_podcast(
            [_segment(store, "a.wav", silent_wav(1))], title="", store=store, on_saved=broken
        )

        assert combined.title == "Untitled Podcast"
        assert not combined.filename.startswith("test_")

    def test_mismatched_formats_are_rejected(self, store):
        segments = [
            _segment(store, "a.wav", silent_wav(0.1)),
            _segment(store, "b.wav", silent_wav(0.1, sample_rate=22050)),
        ]
        with pytest.raises(AudioFormatMismatch):
            combine_podcast(segments, title="x", store=store)
        assert os.listdir(os.path.join(store.root, "podcasts")) == []

    def test_missing_segment_reports_position(self, store):
        segments = [
            _segment(store, "a.wav", silent_wav(0.1)),
            GeneratedSegment(
                audio_url="/audio/segments/gone.wav",
                filename="gone.wav",
                metadata=ScriptLine(speaker="Abram", text="hi"),
            ),
        ]
        with pytest.raises(SegmentDownloadFailed) as exc_info:
            combine_podcast(segments, title="x", store=store)
        assert exc_info.value.index == 1
        assert exc_info.value.filename == "gone.wav"

    def test_empty_input(self, store):
        with pytest.raises(ValueError):
            combine_podcast([], title="x", store=store)
