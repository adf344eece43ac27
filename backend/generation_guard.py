from __future__ import annotations

import hashlib
import threading

from modules.errors import GenerationInProgress

GuardKey = tuple[str, str]


def content_fingerprint(content: str) -> str:
    return hashlib.sha256((content or "").encode("utf-8")).hexdigest()


class GenerationGuard:
    """Advisory in-process map of running generations.

    One run per ``(user_id, content)`` pair; each holds a cancel event that
    the HTTP layer sets when the client goes away.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._running: dict[GuardKey, threading.Event] = {}

    def key(self, user_id: str, content: str) -> GuardKey:
        return (user_id or "anonymous", content_fingerprint(content))

    def acquire(self, user_id: str, content: str) -> tuple[GuardKey, threading.Event]:
        key = self.key(user_id, content)
        with self._lock:
            if key in self._running:
                raise GenerationInProgress(
                    "A generation for this content is already running for this user."
                )
            event = threading.Event()
            self._running[key] = event
        return key, event

    def release(self, key: GuardKey) -> None:
        with self._lock:
            self._running.pop(key, None)

    def is_running(self, user_id: str, content: str) -> bool:
        with self._lock:
            return self.key(user_id, content) in self._running
