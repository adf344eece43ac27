from __future__ import annotations

import asyncio
import json
import os
import threading
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Iterator
from uuid import uuid4

from dotenv import load_dotenv
from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import iterate_in_threadpool, run_in_threadpool

load_dotenv()

from generation_guard import GenerationGuard
from job_store import GenerationRecord, Storage
from modules.audio_store import AudioStore
from modules.document_parser import parse_document
from modules.errors import (
    AudioFormatMismatch,
    DocumentParseFailed,
    GenerationInProgress,
    InvalidWav,
    NotConfiguredError,
    SegmentDownloadFailed,
)
from modules.generator import generate_title, resolve_instructions
from modules.llm import get_client
from modules.tts_router import ensure_tts_configured, get_tts_provider, mock_mode_enabled
from pipeline import PodcastGenerator, audio_generation_events, combine_podcast, generation_events
from schemas import (
    CombineAudioRequest,
    CombineAudioResponse,
    DocumentParseResponse,
    GenerateAudioRequest,
    GeneratePodcastRequest,
    GenerationListResponse,
    GenerationProgress,
    GenerationRecordResponse,
    TitleRequest,
    TitleResponse,
)

app = FastAPI(
    title="Tiki-Taka Podcast API",
    description="Backend for turning documents into two-host podcast scripts and audio",
    version="0.4.0",
)

cors_origins_raw = os.environ.get("CORS_ALLOW_ORIGINS", "*").strip()
if cors_origins_raw == "*":
    allow_origins = ["*"]
else:
    allow_origins = [o.strip() for o in cors_origins_raw.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

storage = Storage()
store = AudioStore()
guard = GenerationGuard()

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(status_code: int, error: str, **extra: Any) -> JSONResponse:
    body: dict[str, Any] = {"error": error}
    body.update({k: v for k, v in extra.items() if v})
    return JSONResponse(status_code=status_code, content=body)


def _sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


async def _event_stream(
    request: Request,
    events: Iterator[dict[str, Any]],
    cancel_event: threading.Event,
    *,
    label: str,
    on_close: Callable[[], None] | None = None,
) -> AsyncIterator[str]:
    try:
        async for event in iterate_in_threadpool(events):
            if await request.is_disconnected():
                print(f"[{_utc_now_iso()}] {label} client=disconnected")
                break
            yield _sse(event)
    finally:
        cancel_event.set()
        # Release before awaiting: a disconnect leaves this scope cancelled.
        try:
            if on_close is not None:
                on_close()
        finally:
            try:
                await run_in_threadpool(events.close)
            except ValueError:
                # Still running in a worker thread; it stops at its next cancel check.
                print(f"[{_utc_now_iso()}] {label} stream=closing_in_background")


def _safe_storage(action: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    try:
        return fn(*args, **kwargs)
    except Exception as exc:
        print(f"[{_utc_now_iso()}] storage action={action} error={exc}")
        return None


def _record_response(record: GenerationRecord) -> GenerationRecordResponse:
    progress = None
    if record.progress:
        try:
            progress = GenerationProgress.model_validate(record.progress)
        except ValueError:
            progress = None
    return GenerationRecordResponse(
        id=record.id,
        user_id=record.user_id,
        title=record.title,
        status=record.status,  # type: ignore[arg-type]
        progress=progress,
        created_at=record.created_at,
        updated_at=record.updated_at,
        completed_at=record.completed_at,
        error=record.error,
        result=record.result,
    )


@app.get("/health")
async def health() -> dict[str, Any]:
    return {"status": "ok", "storage": storage.backend, "mockAudio": mock_mode_enabled()}


@app.post("/documents/parse", response_model=DocumentParseResponse)
async def parse_uploaded_document(request: Request, filename: str = "document"):
    data = await request.body()
    if not data:
        return _error(400, "No file provided")
    content_type = request.headers.get("content-type") or "application/octet-stream"
    try:
        parsed = await asyncio.to_thread(
            parse_document, data, filename, content_type=content_type
        )
    except NotConfiguredError as exc:
        return _error(500, str(exc), remediation=exc.remediation)
    except DocumentParseFailed as exc:
        status = exc.status_code if exc.status_code and 400 <= exc.status_code < 600 else 502
        return _error(status, "Document parsing failed", details=str(exc))
    print(f"[{_utc_now_iso()}] document=parsed filename={filename} pages={parsed.pages}")
    return DocumentParseResponse(text=parsed.text, pages=parsed.pages, filename=filename)


@app.post("/podcasts/title", response_model=TitleResponse)
async def create_title(req: TitleRequest):
    if not (req.content or "").strip():
        return _error(400, "Content is required")
    try:
        client = get_client()
        title = await asyncio.to_thread(generate_title, client, req.content, req.instructions)
    except NotConfiguredError as exc:
        return _error(500, str(exc), remediation=exc.remediation)
    except Exception as exc:
        print(f"[{_utc_now_iso()}] title=failed error={exc}")
        return _error(500, "Failed to generate title")
    return TitleResponse(title=title)


def _generation_run(
    gen: PodcastGenerator,
    run_id: str,
    content: str,
    instructions: str,
) -> Iterator[dict[str, Any]]:
    for event in generation_events(gen, content, instructions, run_id):
        if event["type"] == "complete":
            result: dict[str, Any] = {"final_script": event["data"]["script"]}
            if gen.outline is not None:
                result["outline"] = gen.outline.to_wire()
            _safe_storage("save_generation_result", storage.save_generation_result, run_id, result)
        elif event["type"] == "error":
            print(f"[{_utc_now_iso()}] run={run_id} stage=failed error={event['data'].get('error')}")
        yield event


@app.post("/podcasts/generate")
async def generate_podcast(
    req: GeneratePodcastRequest,
    request: Request,
    x_user_id: str | None = Header(default=None),
):
    content = (req.content or "").strip()
    if not content:
        return _error(400, "Content is required")
    try:
        client = get_client()
    except NotConfiguredError as exc:
        return _error(500, str(exc), remediation=exc.remediation)

    user_id = (x_user_id or "").strip() or "anonymous"
    try:
        key, cancel_event = guard.acquire(user_id, content)
    except GenerationInProgress as exc:
        return _error(409, str(exc))

    run_id = req.generation_id or str(uuid4())
    instructions = resolve_instructions(req.instructions)
    # Until the response exists, on_close cannot release the key.
    try:
        if _safe_storage("get_generation", storage.get_generation, run_id) is None:
            _safe_storage(
                "create_generation",
                storage.create_generation,
                run_id,
                user_id=user_id,
                title=req.title or "Untitled Podcast",
                content=content,
                instructions=instructions,
            )

        def on_progress(progress: GenerationProgress) -> None:
            storage.record_progress(run_id, progress)

        gen = PodcastGenerator(
            client,
            on_progress=on_progress,
            cancel_event=cancel_event,
            run_id=run_id,
        )
        print(f"[{_utc_now_iso()}] run={run_id} stage=started user={user_id} chars={len(content)}")
        events = _generation_run(gen, run_id, content, instructions)
        return StreamingResponse(
            _event_stream(
                request,
                events,
                cancel_event,
                label=f"run={run_id}",
                on_close=lambda: guard.release(key),
            ),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
    except BaseException:
        guard.release(key)
        raise


@app.post("/audio/generate")
async def generate_audio(req: GenerateAudioRequest, request: Request):
    try:
        ensure_tts_configured()
    except NotConfiguredError as exc:
        return _error(
            500,
            str(exc),
            details=exc.remediation,
            mockMode="To test without API costs, set MOCK_AUDIO_GENERATION=true",
        )
    if not req.script:
        return _error(400, "Invalid script format", details="Script must be a non-empty array of segments")

    provider = get_tts_provider()
    cancel_event = threading.Event()
    print(
        f"[{_utc_now_iso()}] audio=started segments={len(req.script)} "
        f"provider={provider.name}"
    )
    events = audio_generation_events(req.script, provider, store, cancel_event=cancel_event)
    return StreamingResponse(
        _event_stream(request, events, cancel_event, label="audio"),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.post("/audio/combine", response_model=CombineAudioResponse)
async def combine_audio(req: CombineAudioRequest):
    if not req.audio_segments:
        return _error(400, "No audio segments provided")
    try:
        combined = await asyncio.to_thread(
            combine_podcast,
            req.audio_segments,
            title=req.title,
            store=store,
            test_mode=req.test_mode,
            on_saved=storage.save_podcast,
        )
    except SegmentDownloadFailed as exc:
        return _error(
            400,
            f"Failed to download audio segment {exc.index + 1}: {exc.filename}",
            details=str(exc),
        )
    except (AudioFormatMismatch, InvalidWav) as exc:
        return _error(422, "Audio segments cannot be combined", details=str(exc))
    except Exception as exc:
        print(f"[{_utc_now_iso()}] combine=failed error={exc}")
        return _error(500, "Failed to combine audio", details=str(exc))

    if req.generation_id:
        _safe_storage(
            "update_generation",
            storage.update_generation,
            req.generation_id,
            result={
                "audio_url": combined.audio_url,
                "audio_id": combined.audio_id,
                "audio_metadata": {
                    "duration": combined.duration_seconds,
                    "file_size": combined.file_size,
                    "format": "wav",
                },
            },
        )
    message = (
        "Test podcast combined and saved successfully! Individual segments cleaned up."
        if req.test_mode
        else "Podcast combined and saved successfully! Individual segments cleaned up."
    )
    return CombineAudioResponse(
        success=True,
        audio_id=combined.audio_id,
        audio_url=combined.audio_url,
        filename=combined.filename,
        file_size=combined.file_size,
        duration_seconds=combined.duration_seconds,
        segment_count=combined.segment_count,
        message=message,
    )


@app.get("/generations", response_model=GenerationListResponse, response_model_exclude_none=True)
async def list_generations(x_user_id: str | None = Header(default=None), limit: int = 10):
    user_id = (x_user_id or "").strip()
    if not user_id:
        return _error(400, "X-User-Id header is required")
    limit = max(1, min(limit, 50))
    records = storage.list_user_generations(user_id, limit)
    return GenerationListResponse(generations=[_record_response(r) for r in records])


@app.get(
    "/generations/{generation_id}",
    response_model=GenerationRecordResponse,
    response_model_exclude_none=True,
)
async def get_generation(generation_id: str):
    record = storage.get_generation(generation_id)
    if record is None:
        return _error(404, "Generation not found")
    return _record_response(record)


# Mounted last so the /audio/generate and /audio/combine routes match first.
app.mount("/audio", StaticFiles(directory=store.root), name="audio")
