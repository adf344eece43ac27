from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Any

import requests

from modules.errors import DocumentParseFailed, DocumentParserNotConfigured

DEFAULT_DOCUMENT_PARSE_URL = "https://api.upstage.ai/v1/document-digitization"

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class ParsedDocument:
    text: str
    pages: int
    raw: dict[str, Any]


def _html_to_text(html: str) -> str:
    return _WS_RE.sub(" ", _TAG_RE.sub("", html or "")).strip()


def extract_text_from_response(payload: dict[str, Any]) -> str:
    """Plain text of a parse result: ``content.text``, else HTML, else elements."""
    content = payload.get("content") if isinstance(payload.get("content"), dict) else {}
    text = content.get("text")
    if isinstance(text, str) and text.strip():
        return text
    html = content.get("html")
    if isinstance(html, str) and html:
        return _html_to_text(html)

    parts: list[str] = []
    for element in payload.get("elements") or []:
        if not isinstance(element, dict):
            continue
        el_content = element.get("content") if isinstance(element.get("content"), dict) else {}
        value = el_content.get("text") or _TAG_RE.sub("", str(el_content.get("html") or ""))
        if value.strip():
            parts.append(value)
    return _WS_RE.sub(" ", " ".join(parts)).strip()


def parse_document(
    data: bytes,
    filename: str,
    *,
    content_type: str = "application/octet-stream",
    timeout: float = 120.0,
) -> ParsedDocument:
    api_key = os.environ.get("UPSTAGE_API_KEY", "").strip()
    if not api_key:
        raise DocumentParserNotConfigured(
            "UPSTAGE_API_KEY is not set.",
            remediation="Add UPSTAGE_API_KEY to your .env file to enable document upload.",
        )
    if not data:
        raise DocumentParseFailed("No file provided", status_code=400)
    url = os.environ.get("UPSTAGE_DOCUMENT_PARSE_URL", DEFAULT_DOCUMENT_PARSE_URL).strip() or DEFAULT_DOCUMENT_PARSE_URL

    try:
        response = requests.post(
            url,
            headers={"Authorization": f"Bearer {api_key}"},
            files={"document": (filename or "document", data, content_type)},
            data={
                "ocr": "force",
                "base64_encoding": "['table']",
                "model": "document-parse",
            },
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise DocumentParseFailed(f"Document parse request failed: {exc}") from exc

    if response.status_code != 200:
        raise DocumentParseFailed(
            f"Document parse API error: {response.status_code} {response.text[:300]}",
            status_code=response.status_code,
        )
    try:
        payload = response.json()
    except ValueError as exc:
        raise DocumentParseFailed("Document parse response is not valid JSON.") from exc

    usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
    pages = usage.get("pages")
    return ParsedDocument(
        text=extract_text_from_response(payload),
        pages=int(pages) if isinstance(pages, (int, float)) else 0,
        raw=payload,
    )
