import sys
from typing import Callable, Iterator

from common.jsonio import atomic_write_json
from common.llm import LLMError
from palaver.engine import ConversationEngine, EngineState
from palaver.errors import PalaverError

HELP_TEXT = """Commands:
  /retry [model]   Regenerate the last answer, optionally with another model
  /accept          Keep the regenerated answer
  /reject          Restore the previous answer
  /rewind <n>      Keep only the first n turns
  /model [name]    Show or switch the model
  /title [text]    Show or set the session title
  /history         Show the conversation so far
  /export <path>   Write the conversation to a JSON file
  /help            Show this help
  /quit            Leave the chat"""


class StreamPrinter:
    """Prints the new tail of each cumulative snapshot."""

    def __init__(self, write: Callable[[str], object] | None = None):
        self._write = write
        self._shown = ""

    def __call__(self, snapshot: str) -> None:
        write = self._write or sys.stdout.write
        if snapshot.startswith(self._shown):
            write(snapshot[len(self._shown) :])
        else:
            write("\n" + snapshot)
        self._shown = snapshot
        sys.stdout.flush()


class ChatREPL:
    def __init__(self, engine: ConversationEngine, autosave: bool = True):
        self.engine = engine
        self.autosave = autosave and engine.store is not None
        self._handlers = {
            "quit": self.cmd_quit,
            "exit": self.cmd_quit,
            "help": self.cmd_help,
            "retry": self.cmd_retry,
            "accept": self.cmd_accept,
            "reject": self.cmd_reject,
            "rewind": self.cmd_rewind,
            "model": self.cmd_model,
            "title": self.cmd_title,
            "history": self.cmd_history,
            "export": self.cmd_export,
        }

    def run(self, initial_message: str | None = None) -> None:
        print(f"🤖 palaver started (model: {self.engine.model})")
        if self.engine.session_id is not None:
            print(f"Resumed session {self.engine.session_id}")
        print("Commands: /help for all commands")

        if initial_message:
            self.process_user_message(initial_message)

        while True:
            try:
                user_input = input("\n> ").strip()
            except (KeyboardInterrupt, EOFError):
                print()
                break
            if not user_input:
                continue
            if user_input.startswith("/"):
                name, _, args = user_input[1:].partition(" ")
                if not self.handle(name.lower(), args.strip()):
                    break
                continue
            self.process_user_message(user_input)

    def handle(self, name: str, args: str) -> bool:
        handler = self._handlers.get(name)
        if handler is None:
            print(f"Unknown command: /{name}. Type /help for available commands.")
            return True
        try:
            return handler(args)
        except (PalaverError, LLMError) as e:
            print(f"❌ Error: {e}")
            return True

    def _stream(self, stream: Iterator[str]) -> bool:
        printer = StreamPrinter()
        try:
            for snapshot in stream:
                printer(snapshot)
        except KeyboardInterrupt:
            stream.close()
            print("\n⚠️  Interrupted")
            return False
        except (PalaverError, LLMError) as e:
            print(f"\n❌ Error: {e}")
            return False
        print()
        return True

    def process_user_message(self, text: str) -> None:
        try:
            stream = self.engine.send(text)
        except PalaverError as e:
            print(f"❌ Error: {e}")
            return
        if not self._stream(stream):
            self.engine.discard_incomplete_turn()
            return
        self._save()

    def _save(self) -> None:
        if not self.autosave:
            return
        try:
            self.engine.save()
        except PalaverError as e:
            print(f"❌ Could not save session: {e}")

    def cmd_quit(self, args: str) -> bool:
        if self.engine.state is EngineState.RETRY_PENDING:
            self.engine.reject_retry()
            print("Pending retry discarded")
        print("👋 Goodbye!")
        return False

    def cmd_help(self, args: str) -> bool:
        print(HELP_TEXT)
        return True

    def cmd_retry(self, args: str) -> bool:
        stream = self.engine.retry(model=args or None)
        if self._stream(stream):
            print("Keep this answer? /accept or /reject")
        return True

    def cmd_accept(self, args: str) -> bool:
        self.engine.accept_retry()
        self._save()
        print("✅ Kept the new answer")
        return True

    def cmd_reject(self, args: str) -> bool:
        self.engine.reject_retry()
        print("✅ Restored the previous answer")
        return True

    def cmd_rewind(self, args: str) -> bool:
        try:
            turn = int(args)
        except ValueError:
            print("Usage: /rewind <turn number>")
            return True
        self.engine.rewind(turn)
        print(f"✅ Rewound to turn {turn}")
        return True

    def cmd_model(self, args: str) -> bool:
        if not args:
            print(f"Current model: {self.engine.model}")
            return True
        self.engine.switch_model(args)
        print(f"✅ Switched to model: {args}")
        return True

    def cmd_title(self, args: str) -> bool:
        if not args:
            print(f"Title: {self.engine.title or '(none)'}")
            return True
        self.engine.set_title(args)
        print(f"✅ Title set to: {args}")
        return True

    def cmd_history(self, args: str) -> bool:
        turn = 0
        for message in self.engine.messages:
            if message.role == "system":
                continue
            if message.role == "user":
                turn += 1
                print(f"\n[{turn}] you: {message.content}")
            elif message.role == "assistant" and message.tool_calls:
                names = ", ".join(
                    str(call.get("function", {}).get("name")) for call in message.tool_calls
                )
                print(f"    (tools: {names})")
            elif message.role == "assistant":
                print(f"    {message.model or self.engine.model}: {message.content}")
        if turn == 0:
            print("No messages yet")
        return True

    def cmd_export(self, args: str) -> bool:
        if not args:
            print("Usage: /export <path>")
            return True
        if self.engine.session_id is not None and self.engine.store is not None:
            self._save()
            target = self.engine.store.export_session(
                self.engine.session_id, args, self.engine.owner_id
            )
        else:
            target = atomic_write_json(
                args,
                {
                    "model": self.engine.model,
                    "messages": [
                        {"role": m.role, "content": m.content, "model": m.model}
                        for m in self.engine.messages
                    ],
                },
            )
        print(f"✅ Exported to {target}")
        return True
