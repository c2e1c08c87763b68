from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, TypeAlias


@dataclass(frozen=True, slots=True)
class AssistantDeltaEvent:
    text: str


@dataclass(frozen=True, slots=True)
class ThinkingDeltaEvent:
    text: str


@dataclass(frozen=True, slots=True)
class ToolCallsEvent:
    calls: list[dict]


@dataclass(frozen=True, slots=True)
class StreamDoneEvent:
    model: str = ""
    done_reason: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    tool_calls: list[dict] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ToolCallEvent:
    tool_name: str
    args: dict


@dataclass(frozen=True, slots=True)
class ToolResultEvent:
    tool_name: str
    success: bool
    output: str


Event: TypeAlias = (
    AssistantDeltaEvent
    | ThinkingDeltaEvent
    | ToolCallsEvent
    | StreamDoneEvent
    | ToolCallEvent
    | ToolResultEvent
)
EventCallback: TypeAlias = Callable[[Event], None] | None


class EventEmitter:
    def __init__(self, callback: EventCallback = None):
        self._callback = callback

    def emit(self, event: Event) -> None:
        if self._callback is not None:
            self._callback(event)
