from __future__ import annotations

import json
from typing import Any, Iterable

from modules.errors import MalformedResponse
from modules.llm import ChatClient, ChatMessage, ChatOptions
from schemas import PodcastOutline, ScriptLine, SearchResponse, Section, Speakers

DEFAULT_INSTRUCTIONS = (
    "Create an engaging 10-15 minute podcast with fun, tiki-taka style conversation "
    "between two hosts. Use conversational tone with natural reactions, quick "
    "back-and-forth exchanges, and make it entertaining while informative. "
    "Each section should be exactly 3 minutes long."
)

OUTLINE_CONTENT_CHARS = 3000
SECTION_CONTENT_CHARS = 1500
TITLE_CONTENT_CHARS = 2000

HOSTS = Speakers()

OUTLINE_JSON_ONLY_SUFFIX = (
    "\n\nReturn valid JSON only. Do not wrap it in markdown and do not add explanations."
)

_OUTLINE_EXAMPLE = {
    "overview": {
        "title": "A concrete episode title drawn from the material",
        "description": "Why this episode is worth a listen",
        "totalDuration": "12-15 minutes",
        "targetAudience": "Who this material is written for",
        "tone": "Conversational and engaging",
    },
    "sections": [
        {
            "id": f"section_{n}",
            "title": f"Concrete title for main segment {n}",
            "description": "What this segment digs into",
            "duration": "3 minutes",
            "keyPoints": [
                "First concrete insight from the material",
                "Second concrete insight from the material",
                "Third concrete insight from the material",
            ],
        }
        for n in (1, 2, 3)
    ],
    "finalThoughts": {
        "title": "A closing segment title with a clear payoff",
        "description": "How the episode wraps up",
        "duration": "2-3 minutes",
        "keyTakeaways": [
            "A takeaway listeners can act on",
            "A point listeners will remember",
            "A clear next step for listeners",
        ],
    },
}

_COMPILED_EXAMPLE = (
    '{"podcast":{"title":"...","description":"...","estimatedDuration":"...",'
    '"speakers":{"A":"Hanna","B":"Abram"},'
    '"script":[{"speaker":"Hanna","text":"...","instruction":"..."}]}}'
)

VOICE_INSTRUCTION_EXAMPLES = (
    "enthusiastic and energetic with rising intonation",
    "warm and conversational with slight excitement",
    "playful with emphasis on key words",
    "bright and engaging with natural pauses",
    "curious and questioning tone",
    "excited with quick pace",
)


def _string_props(*names: str) -> dict[str, Any]:
    return {name: {"type": "string"} for name in names}


OUTLINE_RESPONSE_FORMAT: dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {
        "name": "podcast_outline",
        "strict": False,
        "schema": {
            "type": "object",
            "properties": {
                "overview": {
                    "type": "object",
                    "properties": _string_props(
                        "title", "description", "totalDuration", "targetAudience", "tone"
                    ),
                    "required": ["title", "description", "totalDuration", "targetAudience", "tone"],
                },
                "sections": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            **_string_props("id", "title", "description", "duration"),
                            "keyPoints": {"type": "array", "items": {"type": "string"}},
                        },
                        "required": ["id", "title", "description", "duration", "keyPoints"],
                    },
                },
                "finalThoughts": {
                    "type": "object",
                    "properties": {
                        **_string_props("title", "description", "duration"),
                        "keyTakeaways": {"type": "array", "items": {"type": "string"}},
                    },
                    "required": ["title", "description", "duration", "keyTakeaways"],
                },
            },
            "required": ["overview", "sections", "finalThoughts"],
        },
    },
}

COMPILED_SCRIPT_RESPONSE_FORMAT: dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {
        "name": "complete_podcast_script",
        "strict": True,
        "schema": {
            "type": "object",
            "properties": {
                "podcast": {
                    "type": "object",
                    "properties": {
                        **_string_props("title", "description", "estimatedDuration"),
                        "speakers": {
                            "type": "object",
                            "properties": _string_props("A", "B"),
                            "required": ["A", "B"],
                            "additionalProperties": False,
                        },
                        "script": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "properties": _string_props("speaker", "text", "instruction"),
                                "required": ["speaker", "text", "instruction"],
                                "additionalProperties": False,
                            },
                        },
                    },
                    "required": ["title", "description", "estimatedDuration", "speakers", "script"],
                    "additionalProperties": False,
                }
            },
            "required": ["podcast"],
            "additionalProperties": False,
        },
    },
}


def resolve_instructions(instructions: str | None) -> str:
    value = (instructions or "").strip()
    return value or DEFAULT_INSTRUCTIONS


def build_outline_messages(content: str, instructions: str) -> list[ChatMessage]:
    system = (
        "You are an experienced podcast producer who turns source material into "
        "detailed, lively episode outlines.\n\n"
        "Rules:\n"
        "1. Every field must carry real, specific content taken from the material. "
        'Never write filler such as "string" or "section title".\n'
        "2. Build the sections from what the material actually says.\n"
        '3. Every main section lasts exactly "3 minutes".\n'
        "4. Answer with a single valid JSON object and nothing else."
    )
    user = "\n".join(
        [
            "MATERIAL:",
            (content or "")[:OUTLINE_CONTENT_CHARS],
            "",
            f"INSTRUCTIONS: {instructions or 'Create an engaging conversational podcast'}",
            "",
            "Produce an outline with:",
            '- 3 or 4 main sections, each exactly "3 minutes"',
            "- titles specific to the material",
            "- a description of what each section covers",
            "- 3 or 4 key points per section, drawn from the material",
            '- a total duration of "12-15 minutes"',
            "",
            "Use exactly this JSON shape:",
            json.dumps(_OUTLINE_EXAMPLE, indent=2),
            "",
            "Fill it with content from the material, not with filler text.",
        ]
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def with_json_only_suffix(messages: list[ChatMessage], suffix: str = OUTLINE_JSON_ONLY_SUFFIX) -> list[ChatMessage]:
    out = [dict(m) for m in messages]
    if out and out[0].get("role") == "system":
        out[0]["content"] = out[0]["content"] + suffix
    return out


def find_obvious_placeholders(outline: PodcastOutline) -> str | None:
    """Return a description of the first obvious placeholder, or None."""
    overview_title = outline.overview.title.lower()
    if "string" in overview_title or "title here" in overview_title:
        return f"overview.title looks like a placeholder: {outline.overview.title!r}"
    for idx, section in enumerate(outline.sections):
        title = section.title.lower()
        if "string" in title or "section title" in title:
            return f"sections[{idx}].title looks like a placeholder: {section.title!r}"
        for point in section.key_points:
            if "string" in point.lower() or len(point.strip()) < 5:
                return f"sections[{idx}].keyPoints contains a placeholder: {point!r}"
    return None


def format_search_context(search_context: Iterable[SearchResponse] | None) -> str:
    blocks: list[str] = []
    for response in search_context or []:
        lines = [f"{r.title}: {r.content}" for r in response.results]
        if lines:
            blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def build_section_messages(
    section: Section,
    content: str,
    instructions: str,
    outline: PodcastOutline,
) -> list[ChatMessage]:
    tone = outline.overview.tone
    system = (
        "You are a podcast scriptwriter known for quick, playful tiki-taka dialogue.\n\n"
        "Write a 3-minute exchange between two hosts for the segment below.\n\n"
        "Style:\n"
        "- natural conversation between host A and host B\n"
        "- fast back-and-forth where each host builds on the other\n"
        '- genuine reactions ("wait, really?", "that\'s wild!") and light humour\n'
        "- facts and insights taken from the material and the web research\n"
        "- every turn adds something; no empty agreement lines\n"
        "- stage directions like [PAUSE], [LAUGH] or [EMPHASIS] where they fit\n"
        "- stay within 3 minutes\n"
        f"- overall tone: {tone}\n\n"
        "Format every line exactly like this:\n"
        "A: <what host A says>\n"
        "B: <what host B says>"
    )
    user = "\n".join(
        [
            f"Section: {section.title}",
            f"Description: {section.description}",
            f"Duration: {section.duration}",
            f"Key points: {', '.join(section.key_points)}",
            "",
            "Source material:",
            (content or "")[:SECTION_CONTENT_CHARS],
            "",
            "Web research:",
            format_search_context(section.search_context),
            "",
            f"Instructions: {instructions}",
            f"Target audience: {outline.overview.target_audience}",
            f"Tone: {tone}",
            "",
            "Write the 3-minute A:/B: conversation now.",
        ]
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def section_scripts(outline: PodcastOutline) -> list[str]:
    scripts = [s.script or "" for s in outline.sections]
    scripts.append(outline.final_thoughts.script or "")
    return scripts


def compile_token_budget(total_chars: int) -> int:
    if total_chars > 50_000:
        return 15_000
    if total_chars < 15_000:
        return 8_000
    return 10_000


def build_compile_messages(outline: PodcastOutline) -> list[ChatMessage]:
    examples = "\n".join(f'- "{e}"' for e in VOICE_INSTRUCTION_EXAMPLES)
    system = (
        "You compile separately written podcast segment scripts into one complete "
        "episode script.\n\n"
        "Rules:\n"
        "- Answer with a single valid JSON object and nothing else.\n"
        "- Keep every line of dialogue from every segment. Compile, do not summarize.\n"
        "- Add short transitions between segments without dropping dialogue.\n"
        f"- Speaker A becomes {HOSTS.a}, speaker B becomes {HOSTS.b}.\n"
        "- Give every line a vivid voice instruction for the narrator.\n\n"
        "Order:\n"
        "1. a short opening (30-60 seconds)\n"
        "2. every segment in order, each with its full dialogue\n"
        "3. the final thoughts segment in full\n"
        "4. a brief sign-off if it helps\n\n"
        f"Voice instruction examples:\n{examples}"
    )
    blocks = []
    for idx, section in enumerate(outline.sections, start=1):
        blocks.append(
            f"=== SEGMENT {idx}: {section.title} ===\n"
            f"Duration: {section.duration}\n"
            f"Dialogue:\n{section.script or 'No script generated'}"
        )
    blocks.append(
        "=== FINAL THOUGHTS ===\n"
        f"Duration: {outline.final_thoughts.duration}\n"
        f"Dialogue:\n{outline.final_thoughts.script or ''}"
    )
    user = "\n".join(
        [
            f"Title: {outline.overview.title}",
            f"Target duration: {outline.overview.total_duration}",
            f"Tone: {outline.overview.tone}",
            "",
            "SEGMENT SCRIPTS (keep all dialogue):",
            "",
            "\n\n".join(blocks),
            "",
            f"Compile these into one script using {HOSTS.a}/{HOSTS.b} as speakers, "
            "with an instruction on every line.",
        ]
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def compile_fallback_messages(messages: list[ChatMessage]) -> list[ChatMessage]:
    return with_json_only_suffix(
        messages, f"\n\nAnswer with valid JSON in exactly this shape:\n{_COMPILED_EXAMPLE}"
    )


def normalize_speakers(lines: list[ScriptLine], speakers: Speakers = HOSTS) -> list[ScriptLine]:
    """Map every line onto one of the two hosts.

    ``A``/``B`` labels map to the host names; a label matching a host name
    keeps it; anything else takes the host who did not speak last.
    """
    hosts = {speakers.a.lower(): speakers.a, speakers.b.lower(): speakers.b}
    out: list[ScriptLine] = []
    previous: str | None = None
    for line in lines:
        label = (line.speaker or "").strip()
        if label.upper() == "A":
            name = speakers.a
        elif label.upper() == "B":
            name = speakers.b
        elif label.lower() in hosts:
            name = hosts[label.lower()]
        else:
            name = speakers.b if previous == speakers.a else speakers.a
        out.append(line.model_copy(update={"speaker": name}))
        previous = name
    return out


def build_title_messages(content: str, instructions: str | None) -> list[ChatMessage]:
    text = content or ""
    if len(text) > TITLE_CONTENT_CHARS:
        text = text[:TITLE_CONTENT_CHARS] + "..."
    parts = [
        "Write a short, catchy title for a podcast episode about the material below. "
        "It should be clear, 3 to 8 words long, inviting, and professional without "
        "being stiff.",
        "",
        "Material:",
        text,
    ]
    if instructions:
        parts += ["", f"Instructions: {instructions}"]
    parts += ["", "Reply with the title only, without quotes."]
    return [
        {
            "role": "system",
            "content": "You name podcast episodes. Reply with the title only, no quotes and no extra text.",
        },
        {"role": "user", "content": "\n".join(parts)},
    ]


def generate_title(client: ChatClient, content: str, instructions: str | None = None) -> str:
    raw = client.complete(
        build_title_messages(content, instructions),
        ChatOptions(reasoning_effort="low", temperature=0.7, max_tokens=50),
    )
    title = raw.strip().strip('"').strip("'").strip()
    if not title:
        raise MalformedResponse("Model returned an empty title.", kind="empty")
    return title
