from __future__ import annotations


class PodcastError(RuntimeError):
    """Base class for every error raised by the generation backend."""


class NotConfiguredError(PodcastError):
    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        super().__init__(message)
        self.remediation = remediation


class LlmNotConfigured(NotConfiguredError):
    pass


class SearchUnavailable(NotConfiguredError):
    pass


class TtsNotConfigured(NotConfiguredError):
    pass


class DocumentParserNotConfigured(NotConfiguredError):
    pass


class ChatTransportError(PodcastError):
    def __init__(self, message: str, *, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SearchFailed(PodcastError):
    pass


class SynthesisFailed(PodcastError):
    def __init__(self, message: str, *, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class DocumentParseFailed(PodcastError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedResponse(PodcastError):
    """Model output that could not be turned into JSON.

    ``kind`` is ``"unterminated_string"``, ``"structural"`` or ``"empty"``.
    """

    def __init__(self, message: str, *, kind: str = "structural") -> None:
        super().__init__(message)
        self.kind = kind


class PlaceholderContent(PodcastError):
    def __init__(self, message: str, *, location: str = "", value: str = "") -> None:
        super().__init__(message)
        self.location = location
        self.value = value


class OutlineGenerationFailed(PodcastError):
    def __init__(self, message: str, *, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class CompilationFailed(PodcastError):
    pass


class UnknownSpeaker(PodcastError):
    def __init__(self, speaker: str) -> None:
        super().__init__(f"No voice configured for speaker: {speaker}")
        self.speaker = speaker


class InvalidWav(PodcastError):
    pass


class AudioFormatMismatch(PodcastError):
    pass


class GenerationCancelled(PodcastError):
    pass


class GenerationInProgress(PodcastError):
    pass


class IllegalStageTransition(PodcastError):
    pass


class SegmentDownloadFailed(PodcastError):
    def __init__(self, message: str, *, index: int = -1, filename: str = "") -> None:
        super().__init__(message)
        self.index = index
        self.filename = filename
