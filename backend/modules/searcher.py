from __future__ import annotations

import os
import re
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Literal

import requests

from modules.errors import SearchFailed, SearchUnavailable
from schemas import SearchImage, SearchResponse, SearchResult

DEFAULT_TAVILY_BASE_URL = "https://api.tavily.com"

SearchDepth = Literal["basic", "advanced"]

STOP_WORDS = frozenset(
    """
    the and or but in on at to for of with by from up about into through during
    before after above below between among within without this that these those
    they them their there here where when what which who whom whose how why will
    would could should might must can may shall have has had been being are was
    were am is be do does did get got give gave take took make made come came go
    went see saw know knew think thought say said tell told become became find
    found use used work worked way ways time times year years day days
    """.split()
)


def _normalize_item(raw: dict[str, Any]) -> SearchResult:
    score = raw.get("score")
    return SearchResult(
        title=str(raw.get("title") or ""),
        url=str(raw.get("url") or ""),
        content=str(raw.get("content") or ""),
        score=float(score) if isinstance(score, (int, float)) else 0.0,
    )


def _normalize_image(raw: Any) -> SearchImage | None:
    if isinstance(raw, str):
        return SearchImage(url=raw)
    if isinstance(raw, dict) and raw.get("url"):
        return SearchImage(url=str(raw["url"]), description=str(raw.get("description") or ""))
    return None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def search_configured() -> bool:
    return bool(os.environ.get("TAVILY_API_KEY", "").strip())


def search(
    query: str,
    *,
    max_results: int = 5,
    search_depth: SearchDepth = "advanced",
    include_images: bool = False,
    include_answer: bool = True,
    include_domains: list[str] | None = None,
    exclude_domains: list[str] | None = None,
) -> SearchResponse:
    """Run one web search query against Tavily."""
    api_key = os.environ.get("TAVILY_API_KEY", "").strip()
    if not api_key:
        raise SearchUnavailable(
            "TAVILY_API_KEY is not configured.",
            remediation="Add TAVILY_API_KEY to your .env file to enable web research.",
        )
    base_url = (os.environ.get("TAVILY_BASE_URL", DEFAULT_TAVILY_BASE_URL).strip() or DEFAULT_TAVILY_BASE_URL).rstrip("/")
    timeout = _env_float("SEARCH_TIMEOUT_SECONDS", 30.0)

    payload: dict[str, Any] = {
        "query": query,
        "search_depth": search_depth,
        "max_results": max_results,
        "include_images": include_images,
        "include_answer": include_answer,
    }
    if include_domains:
        payload["include_domains"] = list(include_domains)
    if exclude_domains:
        payload["exclude_domains"] = list(exclude_domains)

    try:
        response = requests.post(
            f"{base_url}/search",
            json=payload,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise SearchFailed(f"Search request failed for {query!r}: {exc}") from exc

    if response.status_code != 200:
        raise SearchFailed(f"Search HTTP {response.status_code} for {query!r}: {response.text[:300]}")

    try:
        data = response.json()
    except ValueError as exc:
        raise SearchFailed("Search response is not valid JSON.") from exc

    results = [_normalize_item(r) for r in data.get("results") or [] if isinstance(r, dict)]
    images = [img for img in (_normalize_image(i) for i in data.get("images") or []) if img]
    answer = data.get("answer")
    return SearchResponse(
        query=query,
        results=results,
        images=images,
        answer=answer if isinstance(answer, str) and answer else None,
    )


def extract_main_topic(content: str) -> str:
    words = re.sub(r"[^\w\s]", "", (content or "").lower()).split()
    meaningful = [w for w in words if len(w) > 3 and w not in STOP_WORDS]
    # Counter keeps first-seen order for equal counts.
    return " ".join(word for word, _ in Counter(meaningful).most_common(3))


def generate_queries(content: str, instructions: str, max_queries: int = 3) -> list[str]:
    topic = extract_main_topic(content)
    year = datetime.now(timezone.utc).year
    # Templates are triggered by the instructions or the opening of the content.
    lowered = f"{instructions or ''} {(content or '')[:1000]}".lower()
    queries: list[str] = []

    if "statistics" in lowered or "data" in lowered:
        queries.append(f"{topic} latest statistics data {year}".strip())
    if "examples" in lowered or "case studies" in lowered:
        queries.append(f"{topic} real world examples case studies".strip())
    if "trends" in lowered or "future" in lowered:
        queries.append(f"{topic} future trends predictions {year}".strip())
    queries.append(f"{topic} recent developments news".strip())

    return queries[: max(0, max_queries)]
