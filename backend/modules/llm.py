from __future__ import annotations

import json
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterator, Literal

import requests

from modules.errors import ChatTransportError, LlmNotConfigured
from modules.sanitizer import strip_think_spans

DEFAULT_LLM_MODEL = "solar-pro2-preview"
DEFAULT_LLM_BASE_URL = "https://api.upstage.ai/v1"

ReasoningEffort = Literal["low", "medium", "high"]
ChatMessage = dict[str, str]

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


@dataclass
class ChatOptions:
    model: str | None = None
    reasoning_effort: ReasoningEffort = "high"
    temperature: float = 0.7
    max_tokens: int = 4000
    response_format: dict[str, Any] | None = None


def _extract_text(payload: dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ChatTransportError("Chat completion response missing choices.")

    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        raise ChatTransportError("Chat completion response missing message.")

    content = message.get("content")
    if isinstance(content, str):
        return content

    # Some providers can return structured content arrays.
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str) and text.strip():
                    parts.append(text.strip())
        return "\n".join(parts)

    return ""


def _extract_delta(payload: dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


def _partial_prefix_len(text: str, tag: str) -> int:
    # Length of the longest suffix of ``text`` that is a proper prefix of ``tag``.
    for size in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


class ThinkTagFilter:
    """Removes ``<think>`` spans from a token stream that may split them.

    Text before an unclosed ``<think>`` is released at once; everything after
    it is held until ``</think>`` arrives. A trailing fragment that could be
    the start of ``<think>`` is held until the next chunk settles it.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._in_think = False

    def feed(self, chunk: str) -> str:
        self._buffer += chunk
        out: list[str] = []
        while self._buffer:
            if self._in_think:
                end = self._buffer.find(THINK_CLOSE)
                if end == -1:
                    # Keep only what could still complete the close tag.
                    keep = _partial_prefix_len(self._buffer, THINK_CLOSE)
                    self._buffer = self._buffer[len(self._buffer) - keep :] if keep else ""
                    break
                self._buffer = self._buffer[end + len(THINK_CLOSE) :]
                self._in_think = False
                continue

            start = self._buffer.find(THINK_OPEN)
            if start != -1:
                out.append(self._buffer[:start])
                self._buffer = self._buffer[start + len(THINK_OPEN) :]
                self._in_think = True
                continue

            keep = _partial_prefix_len(self._buffer, THINK_OPEN)
            if keep:
                out.append(self._buffer[:-keep])
                self._buffer = self._buffer[-keep:]
            else:
                out.append(self._buffer)
                self._buffer = ""
            break
        return "".join(out)

    def flush(self) -> str:
        # An unterminated think block is dropped.
        rest = "" if self._in_think else self._buffer
        self._buffer = ""
        self._in_think = False
        return rest


class ChatClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_LLM_BASE_URL,
        *,
        default_model: str = DEFAULT_LLM_MODEL,
        timeout: float = 300.0,
        session: requests.Session | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self.default_model = default_model
        self._timeout = timeout
        self._session = session or requests.Session()

    def _payload(
        self, messages: list[ChatMessage], options: ChatOptions, *, stream: bool
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": options.model or self.default_model,
            "messages": messages,
            "reasoning_effort": options.reasoning_effort,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "stream": stream,
        }
        if options.response_format:
            payload["response_format"] = options.response_format
        return payload

    def _post(self, payload: dict[str, Any], *, stream: bool) -> requests.Response:
        url = f"{self._base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = self._session.post(
                url,
                json=payload,
                headers=headers,
                timeout=self._timeout,
                stream=stream,
            )
        except requests.RequestException as exc:
            raise ChatTransportError(f"Chat completion request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            body = response.text
            response.close()
            raise ChatTransportError(
                f"Chat completion HTTP {response.status_code}: {body[:500]}",
                status_code=response.status_code,
                body=body,
            )
        return response

    def complete(self, messages: list[ChatMessage], options: ChatOptions | None = None) -> str:
        options = options or ChatOptions()
        response = self._post(self._payload(messages, options, stream=False), stream=False)
        try:
            data = response.json()
        except ValueError as exc:
            raise ChatTransportError(
                "Chat completion response is not valid JSON.",
                status_code=response.status_code,
            ) from exc
        return strip_think_spans(_extract_text(data)).strip()

    def stream_complete(
        self, messages: list[ChatMessage], options: ChatOptions | None = None
    ) -> Iterator[str]:
        """Yield content deltas with think spans removed.

        The request is sent on first iteration; the iterator cannot be
        restarted.
        """
        options = options or ChatOptions()
        response = self._post(self._payload(messages, options, stream=True), stream=True)
        think_filter = ThinkTagFilter()
        # Event streams are UTF-8; without a charset requests falls back to ISO-8859-1.
        response.encoding = "utf-8"
        try:
            for line in response.iter_lines(decode_unicode=True):
                if not line or not line.startswith("data:"):
                    continue
                data = line[len("data:") :].strip()
                if data == "[DONE]":
                    break
                try:
                    payload = json.loads(data)
                except ValueError:
                    print(f"[llm] skipping undecodable stream line: {data[:120]}")
                    continue
                clean = think_filter.feed(_extract_delta(payload))
                if clean:
                    yield clean
            rest = think_filter.flush()
            if rest:
                yield rest
        except requests.RequestException as exc:
            raise ChatTransportError(f"Chat completion stream failed: {exc}") from exc
        finally:
            response.close()


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def get_client() -> ChatClient:
    api_key = os.environ.get("UPSTAGE_API_KEY", "").strip()
    if not api_key:
        raise LlmNotConfigured(
            "UPSTAGE_API_KEY is not set.",
            remediation="Add UPSTAGE_API_KEY to your .env file and restart the server.",
        )
    base_url = os.environ.get("LLM_BASE_URL", DEFAULT_LLM_BASE_URL).strip()
    if not base_url:
        base_url = DEFAULT_LLM_BASE_URL
    return ChatClient(
        api_key=api_key,
        base_url=base_url,
        default_model=resolve_model_name(),
        timeout=_env_float("LLM_TIMEOUT_SECONDS", 300.0),
    )


@lru_cache(maxsize=1)
def resolve_model_name() -> str:
    preferred = os.environ.get("LLM_MODEL", "").strip()
    if preferred:
        return preferred
    return DEFAULT_LLM_MODEL
