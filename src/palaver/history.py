from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from palaver.errors import NoAssistantMessageError, NoUserMessageError

ROLES = ("system", "user", "assistant", "tool")


@dataclass
class Message:
    role: str
    content: str = ""
    thinking: Optional[str] = None
    model: Optional[str] = None
    preset_id: Optional[int] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    id: Optional[int] = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role}")

    @property
    def is_final_answer(self) -> bool:
        return self.role == "assistant" and not self.tool_calls

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            wire["tool_calls"] = self.tool_calls
        return wire


@dataclass
class MessageHistory:
    messages: List[Message] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.messages)

    @property
    def system_prompt(self) -> Optional[str]:
        if self.messages and self.messages[0].role == "system":
            return self.messages[0].content
        return None

    def ensure_system_prompt(self, prompt: str) -> None:
        if self.system_prompt is None:
            self.messages.insert(0, Message(role="system", content=prompt))

    def append(self, message: Message) -> Message:
        self.messages.append(message)
        return message

    def add_user_message(self, content: str) -> Message:
        return self.append(Message(role="user", content=content))

    def add_assistant_message(
        self,
        content: str,
        thinking: Optional[str] = None,
        model: Optional[str] = None,
        preset_id: Optional[int] = None,
        tool_calls: Optional[List[Dict[str, Any]]] = None,
    ) -> Message:
        return self.append(
            Message(
                role="assistant",
                content=content,
                thinking=thinking or None,
                model=model,
                preset_id=preset_id,
                tool_calls=tool_calls or None,
            )
        )

    def add_tool_result(self, content: str) -> Message:
        return self.append(Message(role="tool", content=content))

    def get_messages_for_api(self) -> List[Dict[str, Any]]:
        return [message.to_wire() for message in self.messages]

    def turn_starts(self) -> List[int]:
        return [i for i, message in enumerate(self.messages) if message.role == "user"]

    def turn_count(self) -> int:
        return len(self.turn_starts())

    def turn_boundary(self, turn_number: int) -> int:
        """Index just past the last message of turn ``turn_number``.

        Turn k starts at the k-th user message and runs up to the next one, so
        tool exchanges stay with the turn they belong to. Turn 0 keeps only the
        leading system preamble.
        """
        starts = self.turn_starts()
        if turn_number >= len(starts):
            return len(self.messages)
        return starts[turn_number]

    def truncate_to_turn(self, turn_number: int) -> List[Message]:
        boundary = self.turn_boundary(turn_number)
        removed = self.messages[boundary:]
        del self.messages[boundary:]
        return removed

    def last_turn_span(self) -> Tuple[int, int]:
        """Return (user index, final answer index) of the latest completed turn."""
        answer_index = None
        for i in range(len(self.messages) - 1, -1, -1):
            message = self.messages[i]
            if message.role == "user":
                if answer_index is None:
                    raise NoAssistantMessageError("The latest message has no answer to retry")
                return i, answer_index
            if answer_index is None and message.is_final_answer:
                answer_index = i
        if answer_index is None:
            raise NoAssistantMessageError("There is no assistant message to retry")
        raise NoUserMessageError("There is no user message before the last answer")

    def last_assistant_message(self) -> Optional[Message]:
        for message in reversed(self.messages):
            if message.is_final_answer:
                return message
        return None


def check_tool_sequence(messages: List[Message]) -> None:
    previous: Optional[Message] = None
    for message in messages:
        if message.role == "tool":
            declared = previous is not None and (
                previous.role == "tool" or (previous.role == "assistant" and previous.tool_calls)
            )
            if not declared:
                raise ValueError("Tool message without a preceding tool call")
        previous = message
