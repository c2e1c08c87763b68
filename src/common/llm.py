"""Streaming client for an Ollama-compatible inference server.

The server answers ``POST /api/chat`` with newline-delimited JSON: each line
carries a fragment of ``message.content`` (and ``message.thinking`` for
reasoning models), ``message.tool_calls`` when the model wants a function
run, and a final line with ``done: true``.
"""

import json
import logging
from typing import Any, Iterator, Mapping

import httpx

from common.events import (
    AssistantDeltaEvent,
    Event,
    StreamDoneEvent,
    ThinkingDeltaEvent,
    ToolCallsEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_NUM_CTX = 8192

CONTEXT_WINDOWS: dict[str, int] = {
    "gpt-oss": 131072,
    "gemma2": 8192,
    "qwen2.5": 32768,
}


class LLMError(Exception):
    pass


class LLMTransportError(LLMError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def model_base_name(model: str) -> str:
    return model.split(":", 1)[0]


def recommended_num_ctx(
    model: str,
    table: Mapping[str, int] | None = None,
    default: int = DEFAULT_NUM_CTX,
) -> int:
    windows = CONTEXT_WINDOWS if table is None else table
    return windows.get(model_base_name(model), default)


class OllamaClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 300.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def chat_stream(
        self,
        model: str,
        messages: list[dict],
        tools: list[dict] | None = None,
        options: dict[str, Any] | None = None,
    ) -> Iterator[Event]:
        payload: dict[str, Any] = {"model": model, "messages": messages, "stream": True}
        if tools:
            payload["tools"] = tools
        if options:
            payload["options"] = options

        logger.debug(
            "POST /api/chat model=%s messages=%d tools=%d",
            model,
            len(messages),
            len(tools or []),
        )
        try:
            with self.client.stream("POST", "/api/chat", json=payload) as response:
                if response.status_code >= 400:
                    response.read()
                    raise LLMTransportError(
                        f"Chat API error {response.status_code}: {_error_detail(response)}",
                        response.status_code,
                    )
                yield from self._decode_stream(response.iter_lines())
        except httpx.StreamError as e:
            raise LLMTransportError(f"Chat stream interrupted: {e}") from e
        except httpx.RequestError as e:
            raise LLMTransportError(f"Could not reach Ollama at {self.base_url}: {e}") from e

    def _decode_stream(self, lines: Iterator[str]) -> Iterator[Event]:
        tool_calls: list[dict] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                chunk = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed stream line: %.200s", line)
                continue
            if not isinstance(chunk, dict):
                logger.warning("Skipping non-object stream line: %.200s", line)
                continue
            if "error" in chunk:
                raise LLMTransportError(f"Chat API error: {chunk['error']}")

            message = chunk.get("message") or {}
            thinking = message.get("thinking")
            if thinking:
                yield ThinkingDeltaEvent(thinking)
            content = message.get("content")
            if content:
                yield AssistantDeltaEvent(content)
            calls = message.get("tool_calls")
            if calls:
                tool_calls.extend(calls)
                yield ToolCallsEvent(list(calls))

            if chunk.get("done"):
                yield StreamDoneEvent(
                    model=chunk.get("model", ""),
                    done_reason=chunk.get("done_reason"),
                    prompt_tokens=int(chunk.get("prompt_eval_count") or 0),
                    completion_tokens=int(chunk.get("eval_count") or 0),
                    tool_calls=tool_calls,
                )
                return

        raise LLMTransportError("Chat stream ended before completion")

    def list_models(self) -> list[dict]:
        try:
            response = self.client.get("/api/tags")
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise LLMTransportError(
                f"Ollama API error {e.response.status_code}", e.response.status_code
            ) from e
        except httpx.RequestError as e:
            raise LLMTransportError(f"Could not reach Ollama at {self.base_url}: {e}") from e
        return response.json().get("models") or []

    def is_running(self) -> bool:
        try:
            response = self.client.get("/api/tags")
        except httpx.RequestError:
            return False
        return response.is_success


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.reason_phrase
