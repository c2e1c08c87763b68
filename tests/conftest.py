import copy
import subprocess

import pytest

from common.events import AssistantDeltaEvent, StreamDoneEvent, ThinkingDeltaEvent, ToolCallsEvent
from palaver.config import EngineConfig
from palaver.crypto import FieldCodec, generate_key
from palaver.sessions.store import HistoryStore


class FakeClient:
    """Scripted stand-in for OllamaClient: each queued turn answers one request."""

    def __init__(self):
        self.turns = []
        self.requests = []

    def add_reply(self, text, chunks=None, thinking=None):
        events = []
        if thinking:
            events.append(ThinkingDeltaEvent(thinking))
        for chunk in chunks if chunks is not None else [text]:
            events.append(AssistantDeltaEvent(chunk))
        events.append(StreamDoneEvent(model="fake"))
        self.turns.append(events)

    def add_tool_calls(self, *calls, text=""):
        events = [AssistantDeltaEvent(text)] if text else []
        events.append(
            ToolCallsEvent(
                [{"function": {"name": name, "arguments": arguments}} for name, arguments in calls]
            )
        )
        events.append(StreamDoneEvent(model="fake"))
        self.turns.append(events)

    def add_failure(self, error, after=None):
        self.turns.append([*(after or []), error])

    def chat_stream(self, model, messages, tools=None, options=None):
        self.requests.append(
            {
                "model": model,
                "messages": copy.deepcopy(messages),
                "tools": tools,
                "options": options,
            }
        )
        if not self.turns:
            raise AssertionError("FakeClient received an unexpected request")
        return self._play(self.turns.pop(0))

    def _play(self, events):
        for event in events:
            if isinstance(event, Exception):
                raise event
            yield event


def _git(repo, *args):
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)


@pytest.fixture
def temp_repo(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "--quiet")
    _git(repo, "config", "user.email", "dev@example.com")
    _git(repo, "config", "user.name", "Dev")
    _git(repo, "config", "commit.gpgsign", "false")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    (repo / "README.md").write_text("# Demo\n")
    (repo / "src").mkdir()
    (repo / "src" / "app.py").write_text("def main():\n    return 'hello'\n")
    _git(repo, "add", ".")
    _git(repo, "commit", "-q", "-m", "Initial commit")
    return repo


@pytest.fixture
def project_dir(tmp_path):
    project = tmp_path / "project"
    (project / "docs").mkdir(parents=True)
    (project / "notes.txt").write_text("remember the milk\n")
    (project / "docs" / "guide.md").write_text("# Guide\n")
    (project / ".secret").write_text("hidden\n")
    return project


@pytest.fixture
def codec():
    return FieldCodec(generate_key())


@pytest.fixture
def store(tmp_path, codec):
    history = HistoryStore(tmp_path / "history.db", codec)
    yield history
    history.close()


@pytest.fixture
def config(tmp_path):
    return EngineConfig(
        base_url="http://ollama.test",
        default_model="m1",
        request_timeout=5.0,
        max_tool_rounds=5,
        show_tool_activity=False,
        db_path=str(tmp_path / "history.db"),
    )


@pytest.fixture
def fake_client():
    return FakeClient()
