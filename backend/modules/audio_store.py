from __future__ import annotations

import os
from dataclasses import dataclass

import requests

from modules.errors import SegmentDownloadFailed

AUDIO_URL_PREFIX = "/audio/"
SEGMENTS_DIR = "segments"
PODCASTS_DIR = "podcasts"


def default_audio_dir() -> str:
    configured = os.environ.get("AUDIO_OUTPUT_DIR", "").strip()
    if configured:
        return configured
    return os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "audio_output")


@dataclass(frozen=True)
class StoredAudio:
    filename: str
    url: str
    path: str
    size: int


class AudioStore:
    """WAV files on local disk, served by the app under ``/audio``."""

    def __init__(self, root: str | None = None, *, download_timeout: float = 30.0) -> None:
        self.root = os.path.abspath(root or default_audio_dir())
        self.download_timeout = download_timeout
        for sub in (SEGMENTS_DIR, PODCASTS_DIR):
            os.makedirs(os.path.join(self.root, sub), exist_ok=True)

    def _write(self, subdir: str, filename: str, data: bytes) -> StoredAudio:
        name = os.path.basename(filename)
        path = os.path.join(self.root, subdir, name)
        with open(path, "wb") as f:
            f.write(data)
        return StoredAudio(
            filename=name,
            url=f"{AUDIO_URL_PREFIX}{subdir}/{name}",
            path=path,
            size=len(data),
        )

    def save_segment(self, filename: str, data: bytes) -> StoredAudio:
        return self._write(SEGMENTS_DIR, filename, data)

    def save_podcast(self, filename: str, data: bytes) -> StoredAudio:
        return self._write(PODCASTS_DIR, filename, data)

    def local_path(self, url: str) -> str | None:
        if not url.startswith(AUDIO_URL_PREFIX):
            return None
        relative = url[len(AUDIO_URL_PREFIX) :].split("?", 1)[0]
        path = os.path.abspath(os.path.join(self.root, relative))
        # Stay inside the store root.
        if os.path.commonpath([path, self.root]) != self.root:
            return None
        return path

    def read(self, url: str, *, index: int = -1, filename: str = "") -> bytes:
        """Fetch one stored segment by its ``/audio/...`` URL or an absolute URL."""
        label = filename or url
        local = self.local_path(url)
        if local is not None:
            try:
                with open(local, "rb") as f:
                    return f.read()
            except OSError as exc:
                raise SegmentDownloadFailed(
                    f"Failed to read audio segment {label}: {exc}", index=index, filename=filename
                ) from exc
        if url.startswith(AUDIO_URL_PREFIX) or not url.startswith(("http://", "https://")):
            raise SegmentDownloadFailed(
                f"Unsupported audio location: {url}", index=index, filename=filename
            )
        try:
            response = requests.get(url, timeout=self.download_timeout)
        except requests.RequestException as exc:
            raise SegmentDownloadFailed(
                f"Failed to download audio segment {label}: {exc}", index=index, filename=filename
            ) from exc
        if response.status_code != 200:
            raise SegmentDownloadFailed(
                f"Failed to download audio segment {label}: HTTP {response.status_code}",
                index=index,
                filename=filename,
            )
        return response.content

    def delete_segments(self, filenames: list[str]) -> int:
        """Best-effort cleanup; returns how many files were removed."""
        removed = 0
        for name in filenames:
            path = os.path.join(self.root, SEGMENTS_DIR, os.path.basename(name or ""))
            try:
                os.remove(path)
                removed += 1
            except OSError as exc:
                print(f"[audio_store] segment cleanup skipped file={name} error={exc}")
        return removed
