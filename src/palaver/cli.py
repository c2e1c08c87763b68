from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv

from common.jsonio import to_json
from common.llm import LLMError, OllamaClient
from palaver.config import ConfigError, EngineConfig
from palaver.crypto import EncryptionKeyError, FieldCodec, generate_key
from palaver.engine import ConversationEngine, drain
from palaver.errors import PalaverError
from palaver.repl import ChatREPL, StreamPrinter
from palaver.sessions.store import HistoryStore


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(verbose: bool = False, quiet: bool = False, log_format: str = "text") -> None:
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.WARNING

    if log_format == "json":
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
        logging.basicConfig(level=level, handlers=[handler], force=True)
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            force=True,
        )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def main() -> int:
    load_dotenv()
    return _main(sys.argv[1:])


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="palaver", description="Chat with local models, with sandboxed project tools"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log errors")
    parser.add_argument("--log-format", default="text", choices=["text", "json"])
    parser.add_argument("--db", default=None, help="History database path (PALAVER_DB_PATH)")
    parser.add_argument("--host", default=None, help="Ollama base URL (OLLAMA_HOST)")
    subparsers = parser.add_subparsers(dest="command", required=False)

    chat = subparsers.add_parser("chat", help="Start an interactive chat")
    chat.add_argument("--model", default=None, help="Model to use (PALAVER_MODEL)")
    chat.add_argument("--session", type=int, default=None, help="Resume a saved session id")
    chat.add_argument("--project", default=None, help="Let the model read this directory")
    chat.add_argument(
        "--tool-mode", default=None, choices=["auto", "project", "repository"]
    )
    chat.add_argument("--preset", default=None, help="Parameter preset name (e.g. creative)")
    chat.add_argument("--system-prompt", default=None, help="Override the default instruction")
    chat.add_argument("--no-save", action="store_true", help="Do not persist the conversation")
    chat.add_argument("--hide-tools", action="store_true", help="Hide tool activity notices")
    chat.add_argument("--message", "-m", help="Single prompt (non-interactive)")

    sessions = subparsers.add_parser("sessions", help="Inspect saved sessions")
    sessions_sub = sessions.add_subparsers(dest="sessions_cmd", required=False)
    sessions_list = sessions_sub.add_parser("list", help="List sessions")
    sessions_list.add_argument("--limit", type=int, default=50)
    sessions_show = sessions_sub.add_parser("show", help="Print a session as JSON")
    sessions_show.add_argument("session_id", type=int)
    sessions_export = sessions_sub.add_parser("export", help="Export a session to a JSON file")
    sessions_export.add_argument("session_id", type=int)
    sessions_export.add_argument("path")
    sessions_delete = sessions_sub.add_parser("delete", help="Delete a session")
    sessions_delete.add_argument("session_id", type=int)

    subparsers.add_parser("models", help="List models installed in Ollama")
    subparsers.add_parser("keygen", help="Generate a field encryption key")
    return parser


def _main(argv: list[str]) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.quiet, args.log_format)

    cmd = args.command or "chat"
    if cmd == "keygen":
        return _cmd_keygen()

    try:
        config = EngineConfig()
        if args.host:
            config = dataclasses.replace(config, base_url=args.host)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    if args.db:
        config.db_path = args.db

    try:
        if cmd == "chat":
            if args.command is None:
                args = parser.parse_args([*argv, "chat"])
            return _cmd_chat(args, config)
        if cmd == "sessions":
            return _cmd_sessions(args, config)
        if cmd == "models":
            return _cmd_models(config)
    except EncryptionKeyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except (PalaverError, LLMError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    parser.print_help(sys.stderr)
    return 2


def _open_store(config: EngineConfig) -> HistoryStore:
    codec = FieldCodec.from_env()
    codec.validate()
    return HistoryStore(config.resolved_db_path, codec)


def _cmd_keygen() -> int:
    print(generate_key())
    return 0


def _cmd_models(config: EngineConfig) -> int:
    client = OllamaClient(config.base_url, timeout=config.request_timeout)
    try:
        models = client.list_models()
    finally:
        client.close()
    if not models:
        print("No models installed.")
        return 0
    print(f"{'Name':<40} {'Size':>10}  {'Modified'}")
    for model in models:
        size_gb = (model.get("size") or 0) / 1024**3
        print(f"{model.get('name', ''):<40} {size_gb:>8.1f}GB  {model.get('modified_at', '')}")
    return 0


def _cmd_chat(args: argparse.Namespace, config: EngineConfig) -> int:
    if args.tool_mode:
        config.tool_mode = args.tool_mode
    if args.hide_tools:
        config.show_tool_activity = False

    client = OllamaClient(config.base_url, timeout=config.request_timeout)
    store = None
    try:
        if not client.is_running():
            print(f"Error: Ollama is not reachable at {config.base_url}", file=sys.stderr)
            return 1
        if args.session is not None or not args.no_save:
            store = _open_store(config)
        if args.session is not None:
            engine = ConversationEngine.resume(
                args.session, client=client, store=store, config=config
            )
            if args.model:
                engine.switch_model(args.model)
        else:
            preset_id = None
            if args.preset:
                preset = store.get_parameter_preset_by_name(args.preset) if store else None
                if preset is None:
                    print(f"Error: Unknown preset '{args.preset}'", file=sys.stderr)
                    return 1
                preset_id = preset.id
            engine = ConversationEngine.start(
                args.model or config.default_model,
                system_prompt=args.system_prompt,
                tool_root=args.project,
                client=client,
                store=store,
                config=config,
                preset_id=preset_id,
            )

        if args.message:
            drain(engine.send(args.message), StreamPrinter())
            print()
            if store is not None:
                session_id = engine.save()
                print(f"(session {session_id})", file=sys.stderr)
            return 0

        ChatREPL(engine, autosave=not args.no_save).run()
        return 0
    finally:
        client.close()
        if store is not None:
            store.close()


def _cmd_sessions(args: argparse.Namespace, config: EngineConfig) -> int:
    store = _open_store(config)
    try:
        sub = args.sessions_cmd or "list"
        if sub == "list":
            rows = store.list_sessions(limit=max(0, int(getattr(args, "limit", 50))))
            if not rows:
                print("No sessions found.")
                return 0
            print(f"{'ID':<6} {'Model':<20} {'Msgs':>5} {'Updated':<26} {'Title'}")
            for row in rows:
                title = row.title or row.preview or ""
                print(
                    f"{row.id:<6} {row.model[:20]:<20} {row.message_count:>5} "
                    f"{row.updated_at[:25]:<26} {title[:60]}"
                )
            return 0

        if sub == "show":
            data = store.require_session(args.session_id)
            print(to_json(data.model_dump(mode="json")))
            return 0

        if sub == "export":
            target = store.export_session(args.session_id, args.path)
            print(f"Exported session {args.session_id} to {target}")
            return 0

        if sub == "delete":
            if not store.delete_session(args.session_id):
                print(f"Error: Session {args.session_id} not found", file=sys.stderr)
                return 1
            print(f"Deleted session {args.session_id}")
            return 0
    finally:
        store.close()

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
