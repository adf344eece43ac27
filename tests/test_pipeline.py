from __future__ import annotations

import json
import threading

import pytest

from modules.errors import (
    ChatTransportError,
    CompilationFailed,
    GenerationCancelled,
    IllegalStageTransition,
    LlmNotConfigured,
    OutlineGenerationFailed,
    SearchFailed,
)
from modules import generator as prompts
from pipeline import STAGE_ORDER, PodcastGenerator, StageMachine, generation_events
from schemas import GenerationStage, SearchResponse, SearchResult

from conftest import FakeChatClient, compiled_response, happy_client, sample_outline, section_script

CONTENT = (
    "Hospitals are adopting machine learning for radiology, readmission forecasting "
    "and drug discovery. Recent statistics show adoption doubling."
)


def _run(gen: PodcastGenerator, content: str = CONTENT, instructions: str | None = None):
    events = []
    error = None
    try:
        for event in gen.generate(content, instructions):
            events.append(event)
    except Exception as exc:
        error = exc
    return events, error


def _fake_search(query: str, **kwargs) -> SearchResponse:
    return SearchResponse(
        query=query,
        results=[SearchResult(title="Hospital survey", content="Adoption doubled since last year")],
    )


class TestStageMachine:
    def test_progress_never_decreases(self):
        machine = StageMachine()
        machine.enter(GenerationStage.OUTLINE)
        assert machine.emit("a", 25).progress == 25
        assert machine.emit("b", 10).progress == 25
        assert machine.emit("c", 140).progress == 100

    def test_stages_only_move_forward_one_step(self):
        machine = StageMachine()
        with pytest.raises(IllegalStageTransition):
            machine.enter(GenerationStage.RESEARCH)
        machine.enter(GenerationStage.OUTLINE)
        machine.enter(GenerationStage.OUTLINE)
        with pytest.raises(IllegalStageTransition):
            machine.enter(GenerationStage.SCRIPT)
        machine.enter(GenerationStage.RESEARCH)
        with pytest.raises(IllegalStageTransition):
            machine.enter(GenerationStage.OUTLINE)

    def test_emit_requires_a_stage(self):
        with pytest.raises(IllegalStageTransition):
            StageMachine().emit("early", 0)


class TestPodcastGenerator:
    def test_full_run(self):
        client = happy_client()
        sink: list = []
        gen = PodcastGenerator(client, search_fn=_fake_search, sleep=lambda s: None, on_progress=sink.append)

        events, error = _run(gen)

        assert error is None
        progress = [e.progress for e in events]
        assert progress == sorted(progress)
        assert progress[-1] == 100
        stages = [STAGE_ORDER.index(e.stage) for e in events]
        assert stages == sorted(stages)
        assert set(e.stage for e in events) == set(GenerationStage)

        final = json.loads(events[-1].result)
        script = final["podcast"]["script"]
        assert {line["speaker"] for line in script} == {"Hanna", "Abram"}
        assert final["podcast"]["speakers"] == {"A": "Hanna", "B": "Abram"}

        drafts = [s.script for s in gen.outline.sections] + [gen.outline.final_thoughts.script]
        assert all(drafts)
        assert sum(len(line["text"]) for line in script) >= sum(len(d) for d in drafts)

        # Research attached to every section and passed to the drafting prompt.
        assert all(len(s.search_context) == 2 for s in gen.outline.sections)
        assert "Hospital survey: Adoption doubled" in client.stream_calls[0][0][1]["content"]

        # Outline event carries the outline JSON.
        outline_done = next(e for e in events if e.progress == 25)
        assert json.loads(outline_done.result)["overview"]["title"] == "AI Revolution in Healthcare"

        # Streaming deltas reach the caller but not the sink.
        assert len(sink) < len(events)
        assert any(e.result and e.stage == GenerationStage.SCRIPT for e in events)

    def test_drafting_deltas_accumulate(self):
        gen = PodcastGenerator(happy_client(), search_fn=_fake_search, sleep=lambda s: None)
        events, _ = _run(gen)

        partials = [
            e.result
            for e in events
            if e.stage == GenerationStage.SCRIPT and e.step.startswith("Writing [1/4]")
        ]
        expected = "\n".join(section_script(1))
        assert partials[-1] == expected
        assert expected.startswith(partials[0])
        assert len(partials) == 2

    def test_outline_retries_then_succeeds(self):
        client = happy_client()
        client.complete_queue[:1] = [
            ChatTransportError("structured output unsupported"),
            "not json at all",
            json.dumps(sample_outline()),
        ]
        sleeps: list[float] = []
        gen = PodcastGenerator(client, search_fn=_fake_search, sleep=sleeps.append)

        events, error = _run(gen)

        assert error is None
        assert sleeps == [1.0]
        steps = [e.step for e in events if e.stage == GenerationStage.OUTLINE]
        assert "Generating podcast outline (attempt 2/3)" in steps
        fallback_messages = client.complete_calls[1][0]
        assert fallback_messages[0]["content"].endswith(prompts.OUTLINE_JSON_ONLY_SUFFIX)

    def test_outline_gives_up_after_three_placeholder_attempts(self):
        bad = sample_outline()
        bad["overview"]["title"] = "string"
        client = FakeChatClient(complete=[json.dumps(bad)] * 3)
        sleeps: list[float] = []
        gen = PodcastGenerator(client, search_fn=_fake_search, sleep=sleeps.append)

        events, error = _run(gen)

        assert isinstance(error, OutlineGenerationFailed)
        assert "after 3 attempts" in str(error)
        assert len(client.complete_calls) == 3
        assert sleeps == [1.0, 1.0]
        assert events[-1].error
        assert events[-1].stage == GenerationStage.OUTLINE
        assert gen.outline is None

    def test_missing_llm_key_is_not_retried(self):
        client = FakeChatClient(complete=[LlmNotConfigured("UPSTAGE_API_KEY is not set.")])
        gen = PodcastGenerator(client, sleep=lambda s: None)

        events, error = _run(gen)

        assert isinstance(error, LlmNotConfigured)
        assert len(client.complete_calls) == 1
        assert events[-1].error == "UPSTAGE_API_KEY is not set."

    def test_research_skipped_without_search_key(self):
        gen = PodcastGenerator(happy_client(), sleep=lambda s: None)

        events, error = _run(gen)

        assert error is None
        assert all(s.search_context is None for s in gen.outline.sections)
        research_steps = [e.step for e in events if e.stage == GenerationStage.RESEARCH]
        assert any(step.startswith("Web research skipped") for step in research_steps)
        assert not any(step.startswith("Researching [") for step in research_steps)
        assert "searchContext" not in json.dumps(gen.outline.to_wire())

    def test_failed_queries_are_skipped(self):
        calls: list[str] = []

        def flaky_search(query: str, **kwargs) -> SearchResponse:
            calls.append(query)
            if len(calls) % 2 == 0:
                raise SearchFailed("HTTP 502")
            return _fake_search(query)

        gen = PodcastGenerator(happy_client(), search_fn=flaky_search, sleep=lambda s: None)
        _, error = _run(gen)

        assert error is None
        assert len(calls) == 6
        assert all(len(s.search_context) == 1 for s in gen.outline.sections)

    def test_script_failure_leaves_no_partial_scripts(self):
        client = happy_client()
        client.stream_queue[1] = ChatTransportError("stream dropped")
        gen = PodcastGenerator(client, search_fn=_fake_search, sleep=lambda s: None)

        events, error = _run(gen)

        assert isinstance(error, ChatTransportError)
        assert events[-1].stage == GenerationStage.SCRIPT
        assert events[-1].error == "stream dropped"
        assert all(s.script is None for s in gen.outline.sections)
        assert gen.outline.final_thoughts.script is None
        assert gen.compiled is None

    def test_compile_falls_back_to_plain_prompt(self):
        client = happy_client()
        client.complete_queue.insert(1, ChatTransportError("response_format rejected"))
        gen = PodcastGenerator(client, search_fn=_fake_search, sleep=lambda s: None)

        events, error = _run(gen)

        assert error is None
        assert 94 in [e.progress for e in events]
        assert client.complete_calls[2][1].response_format is None
        assert events[-1].progress == 100

    def test_compile_failure_after_fallback(self):
        client = happy_client()
        client.complete_queue[1:] = [ChatTransportError("first"), ChatTransportError("second")]
        gen = PodcastGenerator(client, search_fn=_fake_search, sleep=lambda s: None)

        events, error = _run(gen)

        assert isinstance(error, CompilationFailed)
        assert events[-1].stage == GenerationStage.FINALIZING
        assert events[-1].error

    def test_unparseable_compiled_script(self):
        client = happy_client()
        client.complete_queue[1] = '{"podcast": {"title": "x", "script": []}}'
        gen = PodcastGenerator(client, search_fn=_fake_search, sleep=lambda s: None)

        _, error = _run(gen)

        assert isinstance(error, CompilationFailed)

    def test_compiled_script_with_host_names_and_think_spans(self):
        client = happy_client()
        client.complete_queue[1] = "<think>draft</think>```json\n" + compiled_response(4, ("Hanna", "Narrator")) + "\n```"
        gen = PodcastGenerator(client, search_fn=_fake_search, sleep=lambda s: None)

        _, error = _run(gen)

        assert error is None
        speakers = [line.speaker for line in gen.compiled.podcast.script]
        assert set(speakers) == {"Hanna", "Abram"}

    def test_cancellation_stops_between_steps(self):
        cancel = threading.Event()

        def sink(progress):
            if progress.stage == GenerationStage.RESEARCH:
                cancel.set()

        client = happy_client()
        gen = PodcastGenerator(client, search_fn=_fake_search, sleep=lambda s: None, on_progress=sink, cancel_event=cancel)

        events, error = _run(gen)

        assert isinstance(error, GenerationCancelled)
        assert not any(e.error for e in events)
        assert client.stream_calls == []

    def test_generate_runs_once(self):
        gen = PodcastGenerator(happy_client(), search_fn=_fake_search, sleep=lambda s: None)
        _run(gen)
        with pytest.raises(RuntimeError):
            next(gen.generate(CONTENT))


class TestGenerationEvents:
    def test_success_ends_with_complete_then_done(self):
        gen = PodcastGenerator(happy_client(), search_fn=_fake_search, sleep=lambda s: None)

        events = list(generation_events(gen, CONTENT, None, "run-1"))

        types = [e["type"] for e in events]
        assert types[-2:] == ["complete", "done"]
        assert set(types[:-2]) == {"progress"}
        complete = events[-2]["data"]
        assert complete["runId"] == "run-1"
        assert complete["progress"]["progress"] == 100
        assert json.loads(complete["script"])["podcast"]["script"]
        assert events[0]["data"]["stage"] == "outline"

    def test_failure_ends_with_error(self):
        client = FakeChatClient(complete=[LlmNotConfigured("UPSTAGE_API_KEY is not set.", remediation="Add it")])
        gen = PodcastGenerator(client, sleep=lambda s: None)

        events = list(generation_events(gen, CONTENT, None, "run-2"))

        assert events[-1] == {
            "type": "error",
            "data": {"error": "UPSTAGE_API_KEY is not set.", "remediation": "Add it"},
        }
        assert events[-2]["data"]["error"] == "UPSTAGE_API_KEY is not set."
        assert "done" not in [e["type"] for e in events]

    def test_cancelled_run_ends_quietly(self):
        cancel = threading.Event()
        cancel.set()
        gen = PodcastGenerator(happy_client(), cancel_event=cancel, sleep=lambda s: None)

        assert list(generation_events(gen, CONTENT, None, "run-3")) == []
