from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
import json
import os
import threading
import time
from typing import Any, Callable, Iterator
from uuid import uuid4

from pydantic import ValidationError

from modules import generator as prompts
from modules import searcher
from modules.audio_store import AudioStore
from modules.errors import (
    CompilationFailed,
    GenerationCancelled,
    IllegalStageTransition,
    NotConfiguredError,
    OutlineGenerationFailed,
    PlaceholderContent,
    PodcastError,
    SearchUnavailable,
)
from modules.llm import ChatClient, ChatOptions
from modules.sanitizer import parse_structured
from modules.tts_base import TtsProvider
from modules.wav import combine_wav_buffers, estimate_duration_seconds, read_wav_header
from schemas import (
    CombinedAudio,
    CompiledScript,
    GeneratedSegment,
    GenerationProgress,
    GenerationStage,
    PodcastOutline,
    ScriptLine,
    SearchResponse,
    Section,
)

ProgressSink = Callable[[GenerationProgress], None]
SearchFn = Callable[..., SearchResponse]

STAGE_ORDER = list(GenerationStage)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _short(text: str, limit: int = 50) -> str:
    value = (text or "").strip()
    return value if len(value) <= limit else value[:limit] + "..."


class StageMachine:
    """Forward-only stage tracker; the only place progress numbers are made."""

    def __init__(self) -> None:
        self.stage: GenerationStage | None = None
        self.progress = 0

    def enter(self, stage: GenerationStage) -> None:
        if self.stage is None:
            allowed = stage == STAGE_ORDER[0]
        else:
            idx = STAGE_ORDER.index(self.stage)
            allowed = stage == self.stage or (
                idx + 1 < len(STAGE_ORDER) and STAGE_ORDER[idx + 1] == stage
            )
        if not allowed:
            current = self.stage.value if self.stage else "start"
            raise IllegalStageTransition(f"Cannot move from {current} to {stage.value}")
        self.stage = stage

    def emit(
        self,
        step: str,
        progress: float,
        *,
        current_section: str | None = None,
        result: str | None = None,
        error: str | None = None,
    ) -> GenerationProgress:
        if self.stage is None:
            raise IllegalStageTransition("No stage entered yet")
        value = max(self.progress, min(100, int(round(progress))))
        self.progress = value
        return GenerationProgress(
            stage=self.stage,
            step=step,
            progress=value,
            current_section=current_section,
            result=result,
            error=error,
        )


class PodcastGenerator:
    """Runs one generation: outline, research, script drafting, compilation.

    ``generate`` is a finite generator of progress events and cannot be
    restarted; create a new instance per run.
    """

    def __init__(
        self,
        client: ChatClient,
        *,
        search_fn: SearchFn | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_progress: ProgressSink | None = None,
        cancel_event: threading.Event | None = None,
        run_id: str | None = None,
    ) -> None:
        self.client = client
        self.search_fn = search_fn or searcher.search
        self.sleep = sleep
        self.on_progress = on_progress
        self.cancel_event = cancel_event or threading.Event()
        self.run_id = run_id or str(uuid4())
        self.machine = StageMachine()
        self.max_outline_attempts = max(1, _env_int("OUTLINE_MAX_ATTEMPTS", 3))
        self.retry_delay = max(0.0, _env_float("OUTLINE_RETRY_DELAY_SECONDS", 1.0))
        self.outline: PodcastOutline | None = None
        self.compiled: CompiledScript | None = None
        self._started = False

    def _log(self, message: str) -> None:
        print(f"[pipeline] run={self.run_id} {message}")

    def _event(self, step: str, progress: float, *, notify: bool = True, **fields: Any) -> GenerationProgress:
        event = self.machine.emit(step, progress, **fields)
        if notify and self.on_progress is not None:
            try:
                self.on_progress(event)
            except Exception as exc:
                self._log(f"progress sink failed stage={event.stage.value} error={exc}")
        return event

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise GenerationCancelled(f"Generation {self.run_id} was cancelled")

    def generate(self, content: str, instructions: str | None = None) -> Iterator[GenerationProgress]:
        if self._started:
            raise RuntimeError("PodcastGenerator.generate can only run once")
        self._started = True
        instructions = prompts.resolve_instructions(instructions)
        try:
            self._check_cancelled()
            self.machine.enter(GenerationStage.OUTLINE)
            outline = yield from self._outline_stage(content, instructions)
            self.outline = outline

            self._check_cancelled()
            self.machine.enter(GenerationStage.RESEARCH)
            outline = yield from self._research_stage(outline, content, instructions)
            self.outline = outline

            self._check_cancelled()
            self.machine.enter(GenerationStage.SCRIPT)
            outline = yield from self._script_stage(outline, content, instructions)
            self.outline = outline

            self._check_cancelled()
            self.machine.enter(GenerationStage.COMBINING)
            yield self._event("Combining all sections together", 85)

            self._check_cancelled()
            self.machine.enter(GenerationStage.FINALIZING)
            yield self._event("Starting final script compilation...", 87)
            compiled = yield from self._compile_stage(outline)
            self.compiled = compiled

            result = json.dumps(compiled.to_wire(), indent=2, ensure_ascii=False)
            yield self._event("Your tiki-taka podcast script is ready!", 100, result=result)
            self._log("stage=done")
        except GenerationCancelled:
            self._log(f"cancelled stage={self.machine.stage.value if self.machine.stage else 'start'}")
            raise
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            self._log(f"failed stage={self.machine.stage.value if self.machine.stage else 'start'} error={message}")
            if self.machine.stage is not None:
                yield self._event("Error occurred during generation", self.machine.progress, error=message)
            raise

    # outline

    def _request_outline(self, messages: list[dict[str, str]]) -> str:
        try:
            return self.client.complete(
                messages,
                ChatOptions(
                    temperature=0.7,
                    max_tokens=2500,
                    response_format=prompts.OUTLINE_RESPONSE_FORMAT,
                ),
            )
        except NotConfiguredError:
            raise
        except Exception as exc:
            self._log(f"stage=outline structured output failed, using plain prompt error={exc}")
        return self.client.complete(
            prompts.with_json_only_suffix(messages),
            ChatOptions(temperature=0.7, max_tokens=2500),
        )

    def _outline_stage(self, content: str, instructions: str):
        yield self._event("Creating podcast outline with overview and final thoughts", 5)
        messages = prompts.build_outline_messages(content, instructions)
        last_error: BaseException | None = None

        for attempt in range(1, self.max_outline_attempts + 1):
            self._check_cancelled()
            yield self._event(
                f"Generating podcast outline (attempt {attempt}/{self.max_outline_attempts})",
                10 + (attempt - 1) * 5,
            )
            try:
                raw = self._request_outline(messages)
                outline = PodcastOutline.model_validate(parse_structured(raw, validate=False))
                problem = prompts.find_obvious_placeholders(outline)
                if problem:
                    raise PlaceholderContent(
                        f"Generated outline contains obvious placeholder content: {problem}"
                    )
            except NotConfiguredError:
                raise
            except Exception as exc:
                last_error = exc
                self._log(f"stage=outline attempt={attempt} error={exc}")
                if attempt < self.max_outline_attempts:
                    self.sleep(self.retry_delay)
                continue

            yield self._event(
                "Outline created with overview and final thoughts",
                25,
                result=json.dumps(outline.to_wire(), indent=2, ensure_ascii=False),
            )
            return outline

        detail = str(last_error) if last_error else "unknown error"
        raise OutlineGenerationFailed(
            f"Failed to generate outline after {self.max_outline_attempts} attempts: {detail}",
            last_error=last_error,
        )

    # research

    def _research_stage(self, outline: PodcastOutline, content: str, instructions: str):
        yield self._event("Researching sections with web search", 30)
        enriched = outline.model_copy(deep=True)
        if self.search_fn is searcher.search and not searcher.search_configured():
            self._log("stage=research skipped reason=no_search_key")
            yield self._event("Web research skipped: TAVILY_API_KEY is not configured.", 50)
            return enriched
        total = len(enriched.sections)
        try:
            queries = searcher.generate_queries(content, instructions, 3)
            if not queries:
                raise ValueError("no search queries could be built")
            for i, section in enumerate(enriched.sections):
                self._check_cancelled()
                yield self._event(
                    f"Researching [{i + 1}/{total}]: {section.title}",
                    30 + (i / total) * 20,
                    current_section=section.title,
                )
                section_queries = [
                    f"{section.title} {queries[0]}",
                    queries[i % len(queries)],
                ]
                found: list[SearchResponse] = []
                for query in section_queries:
                    try:
                        found.append(self.search_fn(query, max_results=3, search_depth="advanced"))
                    except SearchUnavailable:
                        raise
                    except Exception as exc:
                        self._log(f"stage=research query={query!r} skipped error={exc}")
                if found:
                    section.search_context = found
        except SearchUnavailable as exc:
            self._log(f"stage=research skipped error={exc}")
            yield self._event(f"Web research skipped: {exc}", 50)
            return enriched
        except GenerationCancelled:
            raise
        except Exception as exc:
            self._log(f"stage=research abandoned error={exc}")
            yield self._event(f"Web research abandoned: {exc}", 50)
            return outline

        yield self._event("Research completed for all sections", 50)
        return enriched

    # script

    def _draft(self, section: Section, label: str, base: float, content: str, instructions: str, outline: PodcastOutline):
        messages = prompts.build_section_messages(section, content, instructions, outline)
        text = ""
        for delta in self.client.stream_complete(
            messages, ChatOptions(temperature=0.8, max_tokens=3000)
        ):
            self._check_cancelled()
            text += delta
            yield self._event(
                f"Writing {label}: {section.title}",
                base,
                notify=False,
                current_section=section.id if section.id == "final_thoughts" else section.title,
                result=text,
            )
        return text

    def _script_stage(self, outline: PodcastOutline, content: str, instructions: str):
        # Drafts live on a copy so a failed run leaves no partial scripts behind.
        working = outline.model_copy(deep=True)
        total = len(working.sections) + 1

        for i, section in enumerate(working.sections):
            self._check_cancelled()
            label = f"[{i + 1}/{total}]"
            base = 50 + (i / total) * 30
            yield self._event(
                f"Writing tiki-taka script {label}: {section.title}",
                base,
                current_section=section.title,
            )
            section.script = yield from self._draft(section, label, base, content, instructions, working)
            yield self._event(
                f"Completed {label}: {section.title}",
                50 + ((i + 1) / total) * 30,
                current_section=section.title,
                result=section.script,
            )

        self._check_cancelled()
        final_section = working.final_thoughts.as_section()
        label = f"final thoughts [{total}/{total}]"
        base = 50 + ((total - 1) / total) * 30
        yield self._event(
            f"Writing {label}: {final_section.title}",
            base,
            current_section="final_thoughts",
        )
        working.final_thoughts.script = yield from self._draft(
            final_section, label, base, content, instructions, working
        )
        yield self._event(
            f"Completed {label}: {final_section.title}",
            80,
            current_section="final_thoughts",
            result=working.final_thoughts.script,
        )
        return working

    # compilation

    def _compile_stage(self, outline: PodcastOutline):
        scripts = [s for s in prompts.section_scripts(outline) if s.strip()]
        total_chars = sum(len(s) for s in scripts)
        word_count = len(" ".join(scripts).split())
        minutes = round(word_count / 150)
        yield self._event("Analyzing section scripts and calculating content length...", 88)

        budget = prompts.compile_token_budget(total_chars)
        self._log(f"stage=finalizing sections={len(outline.sections)} chars={total_chars} max_tokens={budget}")
        yield self._event(
            f"Preparing final script compilation ({len(outline.sections)} sections, ~{minutes} min)...",
            90,
        )

        messages = prompts.build_compile_messages(outline)
        self._check_cancelled()
        yield self._event(
            f"Generating final script with structured JSON format ({budget} tokens)...", 92
        )
        started = time.perf_counter()
        try:
            raw = self.client.complete(
                messages,
                ChatOptions(
                    temperature=0.3,
                    max_tokens=budget,
                    response_format=prompts.COMPILED_SCRIPT_RESPONSE_FORMAT,
                ),
            )
        except NotConfiguredError:
            raise
        except Exception as exc:
            elapsed = round(time.perf_counter() - started)
            self._log(f"stage=finalizing structured output failed after={elapsed}s error={exc}")
            self._check_cancelled()
            yield self._event(
                f"Structured format failed ({elapsed}s), using fallback prompting...", 94
            )
            try:
                raw = self.client.complete(
                    prompts.compile_fallback_messages(messages),
                    ChatOptions(temperature=0.3, max_tokens=budget),
                )
            except NotConfiguredError:
                raise
            except Exception as fallback_exc:
                raise CompilationFailed(
                    f"Final script compilation failed: {fallback_exc}"
                ) from fallback_exc
        elapsed = round(time.perf_counter() - started)
        yield self._event(f"Script generation complete ({elapsed}s). Validating output...", 96)

        yield self._event("Parsing and validating final script JSON...", 98)
        try:
            compiled = CompiledScript.model_validate(parse_structured(raw))
        except (PodcastError, ValidationError) as exc:
            raise CompilationFailed(f"Final script could not be parsed: {exc}") from exc

        podcast = compiled.podcast
        podcast.script = prompts.normalize_speakers(podcast.script)
        podcast.speakers = prompts.HOSTS.model_copy()

        compiled_chars = sum(len(line.text) for line in podcast.script)
        dialogue_chars = sum(
            len(line.split(":", 1)[-1].strip())
            for s in scripts
            for line in s.splitlines()
            if line.strip()
        )
        if compiled_chars < dialogue_chars:
            self._log(
                f"stage=finalizing warning=compiled script shorter than drafts "
                f"compiled_chars={compiled_chars} draft_chars={dialogue_chars}"
            )

        result = json.dumps(compiled.to_wire(), indent=2, ensure_ascii=False)
        yield self._event(
            f"Final script ready! {len(podcast.script)} dialogue segments generated",
            99,
            result=result,
        )
        return compiled


def error_payload(exc: BaseException) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": str(exc) or exc.__class__.__name__}
    remediation = getattr(exc, "remediation", None)
    if remediation:
        payload["remediation"] = remediation
    return payload


def generation_events(
    generator: PodcastGenerator,
    content: str,
    instructions: str | None,
    run_id: str,
) -> Iterator[dict[str, Any]]:
    """Wire events for one run: progress*, complete, done; or progress*, error."""
    try:
        for progress in generator.generate(content, instructions):
            yield {"type": "progress", "data": progress.to_wire()}
            if progress.progress == 100 and progress.result and not progress.error:
                yield {
                    "type": "complete",
                    "data": {
                        "script": progress.result,
                        "progress": progress.to_wire(),
                        "runId": run_id,
                    },
                }
    except GenerationCancelled:
        return
    except Exception as exc:
        yield {"type": "error", "data": error_payload(exc)}
        return
    yield {"type": "done", "data": {"message": "Podcast generation completed"}}


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


def _synthesize_segment(
    provider: TtsProvider,
    store: AudioStore,
    session_id: str,
    index: int,
    line: ScriptLine,
) -> GeneratedSegment:
    audio = provider.synthesize(line.text, line.speaker, line.instruction)
    speaker_slug = "".join(c for c in line.speaker.lower() if c.isalnum()) or "speaker"
    stored = store.save_segment(f"{session_id}_segment_{index:03d}_{speaker_slug}.wav", audio)
    return GeneratedSegment(
        audio_url=stored.url,
        filename=stored.filename,
        metadata=line,
        file_size=stored.size,
    )


def audio_generation_events(
    script: list[ScriptLine],
    provider: TtsProvider,
    store: AudioStore,
    *,
    session_id: str | None = None,
    max_workers: int | None = None,
    cancel_event: threading.Event | None = None,
) -> Iterator[dict[str, Any]]:
    """Synthesize every line, one WAV per line, in a bounded worker pool.

    A failing line yields ``segment_error`` and does not stop the others.
    The ``complete`` event lists segments in script order.
    """
    session_id = session_id or new_session_id()
    workers = max(1, max_workers if max_workers is not None else _env_int("TTS_MAX_WORKERS", 1))
    cancel_event = cancel_event or threading.Event()
    total = len(script)
    mock = provider.config.test_mode

    yield {
        "type": "progress",
        "data": {
            "step": "Starting audio generation...",
            "progress": 0,
            "totalSegments": total,
            "sessionId": session_id,
        },
    }

    finished: dict[int, GeneratedSegment] = {}
    completed = 0
    try:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            pending: dict[Future, int] = {}
            next_index = 0
            while next_index < total or pending:
                while next_index < total and len(pending) < workers:
                    if cancel_event.is_set():
                        raise GenerationCancelled(f"Audio session {session_id} was cancelled")
                    line = script[next_index]
                    prefix = "Mock generating" if mock else "Generating"
                    yield {
                        "type": "progress",
                        "data": {
                            "step": f'{prefix} TTS for {line.speaker}: "{_short(line.text)}"',
                            "progress": round(completed / total * 100) if total else 100,
                            "currentSegment": next_index + 1,
                            "totalSegments": total,
                        },
                    }
                    future = executor.submit(
                        _synthesize_segment, provider, store, session_id, next_index, line
                    )
                    pending[future] = next_index
                    next_index += 1

                done, _ = wait(set(pending.keys()), return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: pending[f]):
                    index = pending.pop(future)
                    completed += 1
                    try:
                        segment = future.result()
                    except Exception as exc:
                        print(f"[pipeline] session={session_id} segment={index} tts failed error={exc}")
                        yield {
                            "type": "segment_error",
                            "data": {
                                "segmentIndex": index,
                                "error": str(exc) or exc.__class__.__name__,
                                "metadata": script[index].to_wire(),
                            },
                        }
                        continue
                    finished[index] = segment
                    yield {
                        "type": "segment_complete",
                        "data": {"segmentIndex": index, **segment.to_wire()},
                    }
    except GenerationCancelled:
        print(f"[pipeline] session={session_id} cancelled completed={completed}/{total}")
        return
    except Exception as exc:
        print(f"[pipeline] session={session_id} failed error={exc}")
        yield {"type": "error", "data": error_payload(exc)}
        return

    ordered = [finished[i].to_wire() for i in sorted(finished)]
    yield {
        "type": "complete",
        "data": {
            "audioSegments": ordered,
            "totalSegments": total,
            "successfulSegments": len(ordered),
            "sessionId": session_id,
        },
    }


def new_podcast_id() -> str:
    return f"podcast_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


def combine_podcast(
    segments: list[GeneratedSegment],
    *,
    title: str,
    store: AudioStore,
    test_mode: bool = False,
    on_saved: Callable[[str, dict[str, Any]], None] | None = None,
) -> CombinedAudio:
    """Download segments in order, join them into one WAV and store it.

    Segment files are removed afterwards on a best-effort basis.
    """
    if not segments:
        raise ValueError("No audio segments provided")

    buffers = [
        store.read(segment.audio_url, index=i, filename=segment.filename)
        for i, segment in enumerate(segments)
    ]
    combined = combine_wav_buffers(buffers)
    fmt = read_wav_header(combined)
    duration = estimate_duration_seconds(fmt.data_size, fmt)

    podcast_id = new_podcast_id()
    filename = f"{'test_' if test_mode else ''}{podcast_id}.wav"
    stored = store.save_podcast(filename, combined)
    title = title or "Untitled Podcast"

    if on_saved is not None:
        metadata = {
            "id": podcast_id,
            "title": title,
            "filename": stored.filename,
            "download_url": stored.url,
            "test_mode": test_mode,
            "segment_count": len(segments),
            "file_size": stored.size,
            "duration": duration,
            "segments": [s.metadata.to_wire() for s in segments],
        }
        try:
            on_saved(podcast_id, metadata)
        except Exception as exc:
            print(f"[pipeline] podcast={podcast_id} metadata save failed error={exc}")

    removed = store.delete_segments([s.filename for s in segments])
    print(f"[pipeline] podcast={podcast_id} segments={len(segments)} removed={removed} bytes={stored.size}")

    return CombinedAudio(
        audio_id=podcast_id,
        audio_url=stored.url,
        filename=stored.filename,
        file_size=stored.size,
        duration_seconds=duration,
        segment_count=len(segments),
        title=title,
    )
