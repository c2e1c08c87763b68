"""Stateful, streamed, tool-augmented conversations with a local model.

A :class:`ConversationEngine` owns one conversation's message list. ``send``
and ``retry`` return generators that yield cumulative text snapshots while the
model streams; when the model asks for tools the engine runs them through the
sandboxed registry, appends the results, and generates again. Persistence goes
through :class:`~palaver.sessions.store.HistoryStore`, which seals message
fields before they reach the database.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generator, Iterator, List, Optional, Union

from common.events import (
    AssistantDeltaEvent,
    EventCallback,
    EventEmitter,
    ThinkingDeltaEvent,
    ToolCallEvent,
    ToolCallsEvent,
    ToolResultEvent,
)
from common.llm import OllamaClient, recommended_num_ctx
from palaver.config import EngineConfig
from palaver.errors import (
    EmptyMessageError,
    EngineBusyError,
    EngineStateError,
    InvalidTurnNumberError,
    ToolLoopExceededError,
)
from palaver.files import SandboxError
from palaver.history import Message, MessageHistory, check_tool_sequence
from palaver.prompts import build_system_prompt, resolve_default_prompt
from palaver.sessions.store import HistoryStore, SessionNotFoundError, StorageError
from palaver.tools import ToolRegistry, ToolResult, build_tool_registry

logger = logging.getLogger(__name__)

TITLE_LENGTH = 30
NOTICE_ARGS_LENGTH = 50


class EngineState(Enum):
    IDLE = "idle"
    GENERATING = "generating"
    TOOL_PENDING = "tool_pending"
    RETRY_PENDING = "retry_pending"


@dataclass(frozen=True, slots=True)
class TurnResult:
    session_id: Optional[int]
    full_content: str
    model: str
    thinking: Optional[str] = None
    system_prompt: Optional[str] = None


@dataclass
class _PendingRetry:
    user_index: int
    old_block: List[Message]
    saved_count: int


def drain(stream: Iterator[str], on_snapshot: Optional[Callable[[str], None]] = None) -> str:
    """Consume a snapshot stream and return its final assistant text."""
    while True:
        try:
            snapshot = next(stream)
        except StopIteration as stop:
            return stop.value or ""
        if on_snapshot is not None:
            on_snapshot(snapshot)


def auto_title(text: str) -> str:
    title = " ".join(text.split())
    if len(title) > TITLE_LENGTH:
        return title[:TITLE_LENGTH] + "..."
    return title


def _tool_call_parts(call: Dict[str, Any]) -> tuple[str, Any]:
    function = call.get("function") if isinstance(call, dict) else None
    if not isinstance(function, dict):
        return "", {}
    return str(function.get("name") or ""), function.get("arguments")


def _notice_args(arguments: Any) -> str:
    text = arguments if isinstance(arguments, str) else json.dumps(arguments, ensure_ascii=False)
    if len(text) > NOTICE_ARGS_LENGTH:
        return text[:NOTICE_ARGS_LENGTH] + "..."
    return text


def _coerce_history(history: Optional[List[Union[Message, Dict[str, Any]]]]) -> List[Message]:
    messages = []
    for item in history or []:
        if isinstance(item, Message):
            messages.append(item)
        else:
            messages.append(
                Message(
                    role=item["role"],
                    content=item.get("content") or "",
                    thinking=item.get("thinking"),
                    model=item.get("model"),
                    preset_id=item.get("preset_id"),
                    tool_calls=item.get("tool_calls"),
                )
            )
    return messages


class ConversationEngine:
    def __init__(
        self,
        model: str,
        *,
        client: OllamaClient,
        history: MessageHistory,
        store: Optional[HistoryStore] = None,
        config: Optional[EngineConfig] = None,
        tools: Optional[ToolRegistry] = None,
        owner_id: Optional[int] = None,
        parameters: Optional[Dict[str, Any]] = None,
        preset_id: Optional[int] = None,
        session_id: Optional[int] = None,
        project_path: Optional[str] = None,
        title: Optional[str] = None,
        saved_count: int = 0,
        on_event: EventCallback = None,
    ):
        self.client = client
        self.store = store
        self.config = config or EngineConfig()
        self.history = history
        self.tools = tools
        self.owner_id = owner_id
        self.session_id = session_id
        self.project_path = project_path
        self.title = title

        self.model = model
        self.parameters = {k: v for k, v in (parameters or {}).items() if v is not None}
        self.preset_id = preset_id
        self._session_model = model
        self._session_parameters = dict(self.parameters)
        self._session_preset_id = preset_id

        self._state = EngineState.IDLE
        self._saved_count = saved_count
        self._pending_retry: Optional[_PendingRetry] = None
        self._events = EventEmitter(on_event)

    @classmethod
    def start(
        cls,
        model: str,
        history: Optional[List[Union[Message, Dict[str, Any]]]] = None,
        system_prompt: Optional[str] = None,
        tool_root: Optional[str] = None,
        *,
        client: OllamaClient,
        store: Optional[HistoryStore] = None,
        config: Optional[EngineConfig] = None,
        owner_id: Optional[int] = None,
        parameters: Optional[Dict[str, Any]] = None,
        preset_id: Optional[int] = None,
        on_event: EventCallback = None,
    ) -> "ConversationEngine":
        config = config or EngineConfig()
        messages = _coerce_history(history)
        check_tool_sequence(messages)

        tools = None
        project_path = None
        if system_prompt is None:
            system_prompt = resolve_default_prompt(store)
        if tool_root:
            tools = build_tool_registry(tool_root, config.tool_mode)
            files = tools.files
            project_path = str(files.root_path)
            system_prompt = build_system_prompt(
                system_prompt,
                root_path=project_path,
                tool_names=tools.names(),
                file_tree=files.file_tree(config.file_tree_depth),
            )

        if parameters is None and preset_id is not None:
            parameters = _preset_options(store, preset_id)

        conversation = MessageHistory(messages)
        conversation.ensure_system_prompt(system_prompt)
        logger.debug(
            "Starting conversation with %s (%d prior messages, tools=%s)",
            model,
            len(messages),
            ", ".join(tools.names()) if tools else "none",
        )
        return cls(
            model,
            client=client,
            history=conversation,
            store=store,
            config=config,
            tools=tools,
            owner_id=owner_id,
            parameters=parameters,
            preset_id=preset_id,
            project_path=project_path,
            on_event=on_event,
        )

    @classmethod
    def resume(
        cls,
        session_id: int,
        *,
        client: OllamaClient,
        store: HistoryStore,
        config: Optional[EngineConfig] = None,
        owner_id: Optional[int] = None,
        on_event: EventCallback = None,
    ) -> "ConversationEngine":
        data = store.get_session(session_id, owner_id)
        if data is None:
            raise SessionNotFoundError(session_id)
        config = config or EngineConfig()
        session = data.session

        messages = [
            Message(
                role=record.role,
                content=record.content,
                thinking=record.thinking,
                model=record.model,
                preset_id=record.preset_id,
                tool_calls=record.tool_calls,
                id=record.id,
            )
            for record in data.messages
        ]
        conversation = MessageHistory(messages)
        if session.system_prompt_snapshot is not None:
            conversation.ensure_system_prompt(session.system_prompt_snapshot)

        tools = None
        if session.project_path:
            try:
                tools = build_tool_registry(session.project_path, config.tool_mode)
            except SandboxError:
                logger.warning(
                    "Project path %s of session %s is gone; tools disabled",
                    session.project_path,
                    session_id,
                )

        preset_id = None
        last = conversation.last_assistant_message()
        if last is not None:
            preset_id = last.preset_id
        parameters = _preset_options(store, preset_id) if preset_id is not None else None

        logger.debug("Resumed session %s with %d messages", session_id, len(conversation))
        return cls(
            session.model,
            client=client,
            history=conversation,
            store=store,
            config=config,
            tools=tools,
            owner_id=owner_id,
            parameters=parameters,
            preset_id=preset_id,
            session_id=session_id,
            project_path=session.project_path,
            title=session.title,
            saved_count=len(conversation),
            on_event=on_event,
        )

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def messages(self) -> List[Message]:
        return list(self.history.messages)

    @property
    def system_prompt(self) -> Optional[str]:
        return self.history.system_prompt

    @property
    def session_model(self) -> str:
        return self._session_model

    @property
    def is_durable(self) -> bool:
        return self.session_id is not None

    def _require_idle(self, action: str) -> None:
        if self._state is EngineState.RETRY_PENDING:
            raise EngineBusyError(f"Cannot {action}: accept or reject the pending retry first")
        if self._state is not EngineState.IDLE:
            raise EngineBusyError(f"Cannot {action} while a response is being generated")

    def _require_store(self) -> HistoryStore:
        if self.store is None:
            raise StorageError("No history store is configured for this conversation")
        return self.store

    def send(self, text: str) -> Generator[str, None, str]:
        if not isinstance(text, str) or not text.strip():
            raise EmptyMessageError("Message text must not be empty")
        self._require_idle("send a message")
        return self._send_stream(text)

    def _send_stream(self, text: str) -> Generator[str, None, str]:
        self._require_idle("send a message")
        self._state = EngineState.GENERATING
        try:
            self.history.add_user_message(text)
            return (yield from self._generate())
        finally:
            self._state = EngineState.IDLE

    def _options(self) -> Dict[str, Any]:
        options = dict(self.parameters)
        if "num_ctx" not in options:
            options["num_ctx"] = recommended_num_ctx(
                self.model, self.config.context_windows, self.config.default_num_ctx
            )
        return options

    def _generate(self) -> Generator[str, None, str]:
        transcript = ""
        rounds = 0
        while True:
            self._state = EngineState.GENERATING
            content = ""
            thinking = ""
            tool_calls: List[Dict[str, Any]] = []

            stream = self.client.chat_stream(
                self.model,
                self.history.get_messages_for_api(),
                tools=self.tools.get_tool_schemas() if self.tools else None,
                options=self._options(),
            )
            for event in stream:
                if isinstance(event, AssistantDeltaEvent):
                    content += event.text
                    yield transcript + content
                elif isinstance(event, ThinkingDeltaEvent):
                    thinking += event.text
                elif isinstance(event, ToolCallsEvent):
                    tool_calls.extend(event.calls)

            if not tool_calls:
                self.history.add_assistant_message(
                    content,
                    thinking=thinking,
                    model=self.model,
                    preset_id=self.preset_id,
                )
                return content

            rounds += 1
            if rounds > self.config.max_tool_rounds:
                raise ToolLoopExceededError(self.config.max_tool_rounds)

            self._state = EngineState.TOOL_PENDING
            self.history.add_assistant_message(
                content,
                thinking=thinking,
                model=self.model,
                preset_id=self.preset_id,
                tool_calls=tool_calls,
            )
            transcript += content
            logger.debug("Tool round %d: %d call(s)", rounds, len(tool_calls))

            for call in tool_calls:
                name, arguments = _tool_call_parts(call)
                if self.config.show_tool_activity:
                    transcript += f"\n[tool] {name}({_notice_args(arguments)})\n"
                    yield transcript
                self._events.emit(
                    ToolCallEvent(name, arguments if isinstance(arguments, dict) else {})
                )

                result = self._execute_tool(name, arguments)
                self.history.add_tool_result(result.to_content())
                self._events.emit(ToolResultEvent(name, result.success, result.output))

                if self.config.show_tool_activity:
                    transcript += f"[done] {name}\n"
                    yield transcript

    def _execute_tool(self, name: str, arguments: Any) -> ToolResult:
        if self.tools is None:
            return ToolResult(False, "No tools are available in this conversation")
        logger.info("Running tool %s", name)
        return self.tools.execute_tool(name, arguments)

    def retry(
        self, model: Optional[str] = None, preset_id: Optional[int] = None
    ) -> Generator[str, None, str]:
        self._require_idle("retry")
        self.history.last_turn_span()
        return self._retry_stream(model, preset_id)

    def _retry_stream(
        self, model: Optional[str], preset_id: Optional[int]
    ) -> Generator[str, None, str]:
        self._require_idle("retry")
        user_index, _ = self.history.last_turn_span()

        parameters = self.parameters
        if preset_id is not None:
            parameters = _preset_options(self.store, preset_id) or {}

        pending = _PendingRetry(
            user_index=user_index,
            old_block=self.history.messages[user_index + 1 :],
            saved_count=self._saved_count,
        )
        del self.history.messages[user_index + 1 :]
        self._saved_count = min(self._saved_count, user_index + 1)

        self.model = model or self._session_model
        if preset_id is not None:
            self.parameters = parameters
            self.preset_id = preset_id
        self._state = EngineState.GENERATING
        logger.info("Retrying last turn with %s", self.model)

        try:
            content = yield from self._generate()
        except BaseException:
            self._restore(pending)
            raise

        self._pending_retry = pending
        self._state = EngineState.RETRY_PENDING
        return content

    def _restore(self, pending: _PendingRetry) -> None:
        self.history.messages[pending.user_index + 1 :] = pending.old_block
        self._saved_count = pending.saved_count
        self._revert_settings()
        self._state = EngineState.IDLE

    def _revert_settings(self) -> None:
        self.model = self._session_model
        self.parameters = dict(self._session_parameters)
        self.preset_id = self._session_preset_id

    def _take_pending_retry(self) -> _PendingRetry:
        if self._state is not EngineState.RETRY_PENDING or self._pending_retry is None:
            raise EngineStateError("There is no retry waiting to be accepted or rejected")
        return self._pending_retry

    def accept_retry(self) -> None:
        pending = self._take_pending_retry()
        if self.session_id is not None:
            store = self._require_store()
            old_ids = [m.id for m in pending.old_block if m.id is not None]
            with store.session_lock(self.session_id):
                store.soft_delete_messages(self.session_id, old_ids, self.owner_id)
                self._persist_unsaved(store)
            logger.info(
                "Accepted retry for session %s (%d old messages replaced)",
                self.session_id,
                len(old_ids),
            )
        self._pending_retry = None
        self._revert_settings()
        self._state = EngineState.IDLE

    def reject_retry(self) -> None:
        pending = self._take_pending_retry()
        self._pending_retry = None
        self._restore(pending)
        logger.info("Rejected retry; previous answer restored")

    def rewind(self, turn_number: int) -> None:
        if isinstance(turn_number, bool) or not isinstance(turn_number, int):
            raise InvalidTurnNumberError(f"Turn number must be an integer, got {turn_number!r}")
        if turn_number < 0:
            raise InvalidTurnNumberError(f"Turn number must be >= 0, got {turn_number}")
        self._require_idle("rewind")

        if self.session_id is not None:
            store = self._require_store()
            with store.session_lock(self.session_id):
                store.soft_delete_after_turn(self.session_id, turn_number, self.owner_id)

        removed = self.history.truncate_to_turn(turn_number)
        self._saved_count = min(self._saved_count, len(self.history))
        logger.info("Rewound to turn %d (%d messages removed)", turn_number, len(removed))

    def switch_model(self, model: str) -> None:
        if not model:
            raise ValueError("Model name must not be empty")
        self._require_idle("switch model")
        if self.session_id is not None:
            store = self._require_store()
            if not store.update_model(self.session_id, model, self.owner_id):
                raise SessionNotFoundError(self.session_id)
        self.model = model
        self._session_model = model

    def set_title(self, title: str) -> None:
        self.title = title
        if self.session_id is not None:
            store = self._require_store()
            if not store.update_title(self.session_id, title, self.owner_id):
                raise SessionNotFoundError(self.session_id)

    def save(self) -> int:
        self._require_idle("save")
        store = self._require_store()

        if self.session_id is None:
            if self.title is None:
                first_user = next((m for m in self.history.messages if m.role == "user"), None)
                if first_user is not None:
                    self.title = auto_title(first_user.content)
            session_id, ids = store.create_session(
                self._session_model,
                self.history.messages,
                owner_id=self.owner_id,
                title=self.title,
                project_path=self.project_path,
                system_prompt_snapshot=self.history.system_prompt,
            )
            for message, message_id in zip(self.history.messages, ids):
                message.id = message_id
            self.session_id = session_id
            self._saved_count = len(self.history)
            logger.info("Created session %s", session_id)
            return session_id

        with store.session_lock(self.session_id):
            self._persist_unsaved(store)
        return self.session_id

    def _persist_unsaved(self, store: HistoryStore) -> None:
        unsaved = self.history.messages[self._saved_count :]
        if unsaved:
            ids = store.append_messages(self.session_id, unsaved, self.owner_id)
            for message, message_id in zip(unsaved, ids):
                message.id = message_id
        self._saved_count = len(self.history)

    def discard_incomplete_turn(self) -> int:
        self._require_idle("discard a turn")
        starts = self.history.turn_starts()
        if not starts:
            return 0
        user_index = starts[-1]
        if any(m.is_final_answer for m in self.history.messages[user_index + 1 :]):
            return 0
        cut = max(user_index, self._saved_count)
        removed = len(self.history) - cut
        del self.history.messages[cut:]
        if removed:
            logger.info("Discarded %d messages of an unfinished turn", removed)
        return removed

    def turn_result(self) -> TurnResult:
        last = self.history.last_assistant_message()
        return TurnResult(
            session_id=self.session_id,
            full_content=last.content if last else "",
            model=(last.model if last and last.model else self.model),
            thinking=last.thinking if last else None,
            system_prompt=self.history.system_prompt,
        )


def _preset_options(store: Optional[HistoryStore], preset_id: int) -> Optional[Dict[str, Any]]:
    if store is None:
        logger.warning("Preset %s requested without a history store; ignoring it", preset_id)
        return None
    preset = store.get_parameter_preset(preset_id)
    if preset is None:
        logger.warning("Parameter preset %s not found; using model defaults", preset_id)
        return None
    return preset.to_options()
