from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from schemas import GenerationProgress


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GenerationRecord:
    id: str
    user_id: str
    title: str
    status: str
    created_at: datetime
    updated_at: datetime
    content: dict[str, Any] = field(default_factory=dict)
    progress: dict[str, Any] | None = None
    completed_at: datetime | None = None
    error: str | None = None
    result: dict[str, Any] | None = None


@dataclass
class UserStats:
    total_generations: int = 0
    completed_generations: int = 0
    total_characters_processed: int = 0
    last_generation_at: datetime | None = None


class InMemoryGenerationStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._generations: dict[str, GenerationRecord] = {}

    def set(self, record: GenerationRecord) -> None:
        with self._lock:
            self._generations[record.id] = record

    def get(self, generation_id: str) -> GenerationRecord | None:
        with self._lock:
            return self._generations.get(generation_id)

    def update(
        self,
        generation_id: str,
        *,
        status: str | None = None,
        progress: dict[str, Any] | None = None,
        error: str | None = None,
        result: dict[str, Any] | None = None,
        completed: bool = False,
    ) -> GenerationRecord:
        with self._lock:
            record = self._generations[generation_id]
            now = utc_now()
            if status is not None:
                record.status = status
            if progress is not None:
                record.progress = progress
            if error is not None:
                record.error = error
            if result is not None:
                record.result = {**(record.result or {}), **result}
            if completed:
                record.completed_at = now
            record.updated_at = now
            return record

    def list_by_user(self, user_id: str, limit: int = 10) -> list[GenerationRecord]:
        with self._lock:
            records = [r for r in self._generations.values() if r.user_id == user_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]


class InMemoryPodcastStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._podcasts: dict[str, dict[str, Any]] = {}

    def upsert(self, podcast_id: str, podcast: dict[str, Any]) -> None:
        with self._lock:
            self._podcasts[podcast_id] = dict(podcast)

    def get(self, podcast_id: str) -> dict[str, Any] | None:
        with self._lock:
            podcast = self._podcasts.get(podcast_id)
            return dict(podcast) if podcast else None


class InMemoryUserStatsStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._stats: dict[str, UserStats] = {}

    def bump(
        self,
        user_id: str,
        *,
        total: int = 0,
        completed: int = 0,
        characters: int = 0,
    ) -> UserStats:
        with self._lock:
            stats = self._stats.setdefault(user_id, UserStats())
            stats.total_generations += total
            stats.completed_generations += completed
            stats.total_characters_processed += characters
            stats.last_generation_at = utc_now()
            return UserStats(**asdict(stats))

    def get(self, user_id: str) -> UserStats | None:
        with self._lock:
            stats = self._stats.get(user_id)
            return UserStats(**asdict(stats)) if stats else None


def _env_true(name: str, default: bool = False) -> bool:
    raw = str(os.environ.get(name, str(default))).strip().lower()
    return raw in {"1", "true", "yes", "on"}


def status_for_progress(progress: GenerationProgress) -> str:
    if progress.error:
        return "failed"
    if progress.progress >= 100:
        return "completed"
    return "in_progress"


class Storage:
    """
    Primary data access layer.
    - Always writes in-memory for local runtime reads.
    - Optionally mirrors to Firestore when configured.
    """

    def __init__(self) -> None:
        self.generations = InMemoryGenerationStore()
        self.podcasts = InMemoryPodcastStore()
        self.user_stats = InMemoryUserStatsStore()
        self._firestore_client: Any | None = None
        self._firestore_enabled = False
        self._init_firestore()

    def _init_firestore(self) -> None:
        use_firestore = _env_true("USE_FIRESTORE", default=False)
        if not use_firestore:
            return
        try:
            from google.cloud import firestore  # type: ignore

            project_id = os.environ.get("FIRESTORE_PROJECT_ID")
            self._firestore_client = firestore.Client(project=project_id or None)
            self._firestore_enabled = True
            print("[storage] Firestore enabled.")
        except Exception as exc:
            self._firestore_enabled = False
            self._firestore_client = None
            print(f"[storage] Firestore disabled, fallback to in-memory: {exc}")

    @property
    def backend(self) -> str:
        return "firestore" if self._firestore_enabled else "in-memory"

    def _mirror(self, collection: str, doc_id: str, payload: dict[str, Any], *, merge: bool = True) -> None:
        if not self._firestore_enabled:
            return
        assert self._firestore_client is not None
        self._firestore_client.collection(collection).document(doc_id).set(payload, merge=merge)

    def _bump_stats(self, user_id: str, **deltas: int) -> None:
        stats = self.user_stats.bump(user_id, **deltas)
        self._mirror("user_stats", user_id, asdict(stats))

    def create_generation(
        self,
        generation_id: str,
        *,
        user_id: str,
        title: str,
        content: str,
        instructions: str,
        input_type: str = "text",
    ) -> GenerationRecord:
        now = utc_now()
        record = GenerationRecord(
            id=generation_id,
            user_id=user_id,
            title=title,
            status="pending",
            created_at=now,
            updated_at=now,
            content={
                "original_content": content,
                "instructions": instructions,
                "input_type": input_type,
            },
        )
        self.generations.set(record)
        self._mirror("generations", generation_id, asdict(record), merge=False)
        self._bump_stats(user_id, total=1)
        return record

    def update_generation(
        self,
        generation_id: str,
        *,
        status: str | None = None,
        progress: dict[str, Any] | None = None,
        error: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> GenerationRecord:
        completed = status == "completed"
        record = self.generations.update(
            generation_id,
            status=status,
            progress=progress,
            error=error,
            result=result,
            completed=completed,
        )
        payload: dict[str, Any] = {"updated_at": record.updated_at}
        if status is not None:
            payload["status"] = status
        if progress is not None:
            payload["progress"] = progress
        if error is not None:
            payload["error"] = error
        if result is not None:
            payload["result"] = record.result
        if completed:
            payload["completed_at"] = record.completed_at
        self._mirror("generations", generation_id, payload)
        return record

    def record_progress(self, generation_id: str, progress: GenerationProgress) -> GenerationRecord:
        return self.update_generation(
            generation_id,
            status=status_for_progress(progress),
            progress=progress.to_wire(),
            error=progress.error,
        )

    def save_generation_result(self, generation_id: str, result: dict[str, Any]) -> GenerationRecord:
        record = self.update_generation(generation_id, status="completed", result=result)
        characters = len(str(record.content.get("original_content") or ""))
        self._bump_stats(record.user_id, completed=1, characters=characters)
        return record

    def get_generation(self, generation_id: str) -> GenerationRecord | None:
        record = self.generations.get(generation_id)
        if record is not None:
            return record
        if not self._firestore_enabled:
            return None
        assert self._firestore_client is not None
        snap = self._firestore_client.collection("generations").document(generation_id).get()
        if not snap.exists:
            return None
        record = self._record_from_doc(generation_id, snap.to_dict() or {})
        self.generations.set(record)
        return record

    def _record_from_doc(self, generation_id: str, data: dict[str, Any]) -> GenerationRecord:
        created_at = data.get("created_at") or utc_now()
        return GenerationRecord(
            id=generation_id,
            user_id=data.get("user_id", ""),
            title=data.get("title", ""),
            status=data.get("status", "pending"),
            created_at=created_at,
            updated_at=data.get("updated_at") or created_at,
            content=data.get("content") or {},
            progress=data.get("progress"),
            completed_at=data.get("completed_at"),
            error=data.get("error"),
            result=data.get("result"),
        )

    def list_user_generations(self, user_id: str, limit: int = 10) -> list[GenerationRecord]:
        if self._firestore_enabled:
            assert self._firestore_client is not None
            docs = (
                self._firestore_client.collection("generations")
                .where("user_id", "==", user_id)
                .order_by("created_at", direction="DESCENDING")
                .limit(limit)
                .stream()
            )
            records = [self._record_from_doc(doc.id, doc.to_dict() or {}) for doc in docs]
            for record in records:
                self.generations.set(record)
            if records:
                return records
        return self.generations.list_by_user(user_id, limit)

    def save_podcast(self, podcast_id: str, podcast: dict[str, Any]) -> None:
        self.podcasts.upsert(podcast_id, podcast)
        self._mirror("podcasts", podcast_id, podcast, merge=False)

    def get_podcast(self, podcast_id: str) -> dict[str, Any] | None:
        podcast = self.podcasts.get(podcast_id)
        if podcast is not None:
            return podcast
        if not self._firestore_enabled:
            return None
        assert self._firestore_client is not None
        snap = self._firestore_client.collection("podcasts").document(podcast_id).get()
        if not snap.exists:
            return None
        data = snap.to_dict() or {}
        self.podcasts.upsert(podcast_id, data)
        return data

    def get_user_stats(self, user_id: str) -> UserStats | None:
        return self.user_stats.get(user_id)
