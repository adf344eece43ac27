from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from modules import document_parser
from modules.errors import DocumentParseFailed, DocumentParserNotConfigured


def test_prefers_plain_text():
    payload = {"content": {"text": "Plain body", "html": "<p>Other</p>"}}
    assert document_parser.extract_text_from_response(payload) == "Plain body"


def test_falls_back_to_html():
    payload = {"content": {"text": "", "html": "<h1>Title</h1>\n<p>Body   text</p>"}}
    assert document_parser.extract_text_from_response(payload) == "Title Body text"


def test_falls_back_to_elements():
    payload = {
        "elements": [
            {"content": {"text": "First part"}},
            {"content": {"html": "<p>Second part</p>"}},
            "junk",
        ]
    }
    assert document_parser.extract_text_from_response(payload) == "First part Second part"


def test_requires_api_key(monkeypatch):
    monkeypatch.delenv("UPSTAGE_API_KEY", raising=False)
    with pytest.raises(DocumentParserNotConfigured):
        document_parser.parse_document(b"%PDF", "paper.pdf")


def test_empty_upload_is_rejected():
    with pytest.raises(DocumentParseFailed) as exc_info:
        document_parser.parse_document(b"", "paper.pdf")
    assert exc_info.value.status_code == 400


def test_parse_document_posts_multipart(monkeypatch):
    response = MagicMock(status_code=200)
    response.json.return_value = {"content": {"text": "Parsed text"}, "usage": {"pages": 2}}
    post = MagicMock(return_value=response)
    monkeypatch.setattr(document_parser.requests, "post", post)

    parsed = document_parser.parse_document(b"%PDF-1.4", "paper.pdf", content_type="application/pdf")

    assert parsed.text == "Parsed text"
    assert parsed.pages == 2
    kwargs = post.call_args.kwargs
    assert kwargs["files"]["document"] == ("paper.pdf", b"%PDF-1.4", "application/pdf")
    assert kwargs["data"]["ocr"] == "force"
    assert kwargs["data"]["model"] == "document-parse"
    assert kwargs["headers"]["Authorization"] == "Bearer test-upstage-key"


def test_parse_document_http_error(monkeypatch):
    response = MagicMock(status_code=413, text="too large")
    monkeypatch.setattr(document_parser.requests, "post", MagicMock(return_value=response))

    with pytest.raises(DocumentParseFailed) as exc_info:
        document_parser.parse_document(b"%PDF", "big.pdf")
    assert exc_info.value.status_code == 413
