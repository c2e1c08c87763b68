import json

import httpx
import pytest

from common.events import AssistantDeltaEvent, StreamDoneEvent, ThinkingDeltaEvent, ToolCallsEvent
from common.llm import LLMTransportError, OllamaClient, recommended_num_ctx


def _ndjson(*chunks) -> bytes:
    return "".join(json.dumps(chunk) + "\n" for chunk in chunks).encode()


def _client(handler) -> OllamaClient:
    return OllamaClient("http://ollama.test", timeout=5.0, transport=httpx.MockTransport(handler))


def test_chat_stream_decodes_events_and_sends_payload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            content=_ndjson(
                {"message": {"role": "assistant", "thinking": "hmm"}, "done": False},
                {"message": {"role": "assistant", "content": "Hel"}, "done": False},
                {"message": {"role": "assistant", "content": "lo"}, "done": False},
                {"message": {"role": "assistant", "content": ""}, "done": True, "eval_count": 7},
            ),
        )

    events = list(
        _client(handler).chat_stream(
            "gemma2:9b",
            [{"role": "user", "content": "hi"}],
            options={"num_ctx": 8192},
        )
    )

    assert seen["path"] == "/api/chat"
    assert seen["body"] == {
        "model": "gemma2:9b",
        "messages": [{"role": "user", "content": "hi"}],
        "stream": True,
        "options": {"num_ctx": 8192},
    }
    assert events[:3] == [
        ThinkingDeltaEvent("hmm"),
        AssistantDeltaEvent("Hel"),
        AssistantDeltaEvent("lo"),
    ]
    assert isinstance(events[-1], StreamDoneEvent)
    assert events[-1].completion_tokens == 7


def test_chat_stream_reports_tool_calls():
    call = {"function": {"name": "list_files", "arguments": {"directory": ""}}}

    def handler(request):
        body = json.loads(request.content)
        assert body["tools"][0]["function"]["name"] == "list_files"
        return httpx.Response(
            200,
            content=_ndjson(
                {"message": {"role": "assistant", "content": "", "tool_calls": [call]}, "done": False},
                {"message": {"role": "assistant", "content": ""}, "done": True},
            ),
        )

    tools = [{"type": "function", "function": {"name": "list_files"}}]
    events = list(_client(handler).chat_stream("m", [], tools=tools))

    assert events[0] == ToolCallsEvent([call])
    assert events[-1].tool_calls == [call]


def test_malformed_lines_are_skipped():
    def handler(request):
        body = b"not json\n" + _ndjson(
            {"message": {"content": "ok"}, "done": False},
            {"done": True},
        )
        return httpx.Response(200, content=body)

    events = list(_client(handler).chat_stream("m", []))

    assert events[0] == AssistantDeltaEvent("ok")


def test_error_status_raises_transport_error():
    def handler(request):
        return httpx.Response(404, json={"error": "model 'nope' not found"})

    with pytest.raises(LLMTransportError) as exc_info:
        list(_client(handler).chat_stream("nope", []))

    assert exc_info.value.status_code == 404
    assert "not found" in str(exc_info.value)


def test_stream_without_done_raises():
    def handler(request):
        return httpx.Response(200, content=_ndjson({"message": {"content": "partial"}, "done": False}))

    with pytest.raises(LLMTransportError, match="ended before completion"):
        list(_client(handler).chat_stream("m", []))


def test_connection_error_raises_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(LLMTransportError, match="Could not reach Ollama"):
        list(_client(handler).chat_stream("m", []))


def test_error_line_in_stream_raises():
    def handler(request):
        return httpx.Response(200, content=_ndjson({"error": "out of memory"}))

    with pytest.raises(LLMTransportError, match="out of memory"):
        list(_client(handler).chat_stream("m", []))


def test_list_models_and_is_running():
    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "gemma2:9b", "size": 1}]})

    client = _client(handler)

    assert client.is_running()
    assert client.list_models() == [{"name": "gemma2:9b", "size": 1}]


def test_is_running_false_when_unreachable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    assert not _client(handler).is_running()


@pytest.mark.parametrize(
    "model,expected",
    [
        ("gpt-oss:20b", 131072),
        ("gemma2:9b", 8192),
        ("qwen2.5:14b", 32768),
        ("qwen2.5", 32768),
        ("llama3:8b", 8192),
    ],
)
def test_recommended_num_ctx(model, expected):
    assert recommended_num_ctx(model) == expected


def test_recommended_num_ctx_custom_table():
    assert recommended_num_ctx("mine:1b", {"mine": 4096}, default=1024) == 4096
    assert recommended_num_ctx("other", {"mine": 4096}, default=1024) == 1024
