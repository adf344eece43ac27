from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


GenerationStatus = Literal["pending", "in_progress", "completed", "failed"]


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class SearchResult(WireModel):
    title: str = ""
    url: str = ""
    content: str = ""
    score: float = 0.0


class SearchImage(WireModel):
    url: str
    description: str = ""


class SearchResponse(WireModel):
    query: str
    results: list[SearchResult] = Field(default_factory=list)
    images: list[SearchImage] = Field(default_factory=list)
    answer: str | None = None


class Overview(WireModel):
    title: str
    description: str
    total_duration: str
    target_audience: str
    tone: str


class Section(WireModel):
    id: str
    title: str
    description: str
    duration: str = "3 minutes"
    key_points: list[str] = Field(min_length=3)
    search_context: list[SearchResponse] | None = None
    script: str | None = None


class FinalThoughts(WireModel):
    title: str
    description: str
    duration: str = "2-3 minutes"
    key_takeaways: list[str] = Field(default_factory=list)
    script: str | None = None

    def as_section(self) -> Section:
        return Section.model_construct(
            id="final_thoughts",
            title=self.title,
            description=self.description,
            duration=self.duration,
            key_points=list(self.key_takeaways),
            search_context=None,
            script=self.script,
        )


class PodcastOutline(WireModel):
    overview: Overview
    sections: list[Section] = Field(min_length=3)
    final_thoughts: FinalThoughts


class GenerationStage(str, Enum):
    OUTLINE = "outline"
    RESEARCH = "research"
    SCRIPT = "script"
    COMBINING = "combining"
    FINALIZING = "finalizing"


class GenerationProgress(WireModel):
    stage: GenerationStage
    step: str
    progress: int = Field(ge=0, le=100)
    current_section: str | None = None
    result: str | None = None
    error: str | None = None


class ScriptLine(WireModel):
    speaker: str
    text: str
    instruction: str = ""


class Speakers(WireModel):
    a: str = Field(default="Hanna", alias="A")
    b: str = Field(default="Abram", alias="B")


class CompiledPodcast(WireModel):
    title: str
    description: str = ""
    estimated_duration: str = ""
    speakers: Speakers = Field(default_factory=Speakers)
    script: list[ScriptLine] = Field(min_length=1)


class CompiledScript(WireModel):
    podcast: CompiledPodcast


class GeneratedSegment(WireModel):
    audio_url: str
    filename: str
    metadata: ScriptLine
    file_size: int | None = None


class CombinedAudio(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    audio_id: str
    audio_url: str
    filename: str
    file_size: int
    duration_seconds: int
    segment_count: int
    title: str


# HTTP request / response models


class GeneratePodcastRequest(WireModel):
    content: str = ""
    instructions: str | None = None
    generation_id: str | None = None
    title: str | None = None


class TitleRequest(WireModel):
    content: str = ""
    instructions: str | None = None


class TitleResponse(WireModel):
    title: str


class GenerateAudioRequest(WireModel):
    script: list[ScriptLine]
    speakers: Speakers = Field(default_factory=Speakers)


class CombineAudioRequest(WireModel):
    audio_segments: list[GeneratedSegment] = Field(default_factory=list)
    title: str = "Untitled Podcast"
    test_mode: bool = False
    generation_id: str | None = None


class CombineAudioResponse(WireModel):
    success: bool
    audio_id: str
    audio_url: str
    filename: str
    file_size: int
    duration_seconds: int
    segment_count: int
    message: str


class DocumentParseResponse(WireModel):
    text: str
    pages: int = 0
    filename: str = ""


class GenerationRecordResponse(WireModel):
    id: str
    user_id: str
    title: str
    status: GenerationStatus
    progress: GenerationProgress | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    error: str | None = None
    result: dict[str, Any] | None = None


class GenerationListResponse(WireModel):
    generations: list[GenerationRecordResponse]
