import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Sequence

from common.jsonio import atomic_write_json
from palaver.crypto import FieldCodec
from palaver.errors import PalaverError
from palaver.history import Message
from palaver.sessions.schema import (
    MessageRecord,
    ParameterPreset,
    SessionData,
    SessionRecord,
    SessionSummary,
)

logger = logging.getLogger(__name__)


class StorageError(PalaverError):
    pass


class SessionNotFoundError(StorageError):
    def __init__(self, session_id: int):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    model TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    title TEXT,
    project_path TEXT,
    system_prompt_snapshot TEXT,
    owner_id INTEGER
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    thinking TEXT,
    model TEXT,
    preset_id INTEGER REFERENCES parameter_presets(id),
    tool_calls TEXT,
    created_at TEXT NOT NULL,
    deleted_at TEXT
);

CREATE TABLE IF NOT EXISTS parameter_presets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL,
    description TEXT,
    temperature REAL,
    top_p REAL,
    top_k INTEGER,
    repeat_penalty REAL,
    num_ctx INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS default_prompt (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    system_prompt TEXT NOT NULL,
    description TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_session_id ON messages(session_id);
CREATE INDEX IF NOT EXISTS idx_sessions_owner_id ON sessions(owner_id);
"""

DEFAULT_PRESETS = [
    ("default", "Default", "Balanced standard settings", 0.7, 0.9, 40, 1.1),
    ("creative", "Creative", "More varied and imaginative answers", 1.0, 0.95, 50, 1.05),
]

PREVIEW_LENGTH = 80


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class HistoryStore:
    """SQLite-backed sessions and messages with sealed message fields.

    Message content, reasoning traces and tool-call payloads pass through the
    codec on every write and read. Soft-deleted rows are kept but never
    returned. Passing ``owner_id`` scopes an operation to that owner; a
    session owned by someone else behaves exactly like a missing one.
    """

    def __init__(self, db_path: str | Path, codec: FieldCodec | None = None):
        self.db_path = str(db_path)
        self.codec = codec or FieldCodec.from_env()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._session_locks: dict[int, threading.RLock] = {}
        self._session_locks_guard = threading.Lock()
        self._ensure_directory()
        self._init_db()

    def _ensure_directory(self) -> None:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self) -> None:
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")

            cursor = self._conn.cursor()
            cursor.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
            )
            if not cursor.fetchone():
                cursor.executescript(SCHEMA)
                cursor.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
                )
                self._seed_presets(cursor)
                self._conn.commit()
                logger.info("History database initialized at %s", self.db_path)
            else:
                cursor.execute("SELECT version FROM schema_version")
                row = cursor.fetchone()
                if row and row[0] != SCHEMA_VERSION:
                    logger.warning(
                        "Schema version mismatch: expected %s, got %s", SCHEMA_VERSION, row[0]
                    )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open history database {self.db_path}: {e}") from e

    def _seed_presets(self, cursor: sqlite3.Cursor) -> None:
        now = _now_iso()
        cursor.executemany(
            """
            INSERT INTO parameter_presets
            (name, display_name, description, temperature, top_p, top_k, repeat_penalty, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [(*preset, now) for preset in DEFAULT_PRESETS],
        )

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Database connection not initialized")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    @contextmanager
    def _write(self, action: str) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cursor = self.conn.cursor()
            try:
                yield cursor
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                logger.error("Failed to %s: %s", action, e)
                raise StorageError(f"Failed to {action}: {e}") from e
            except BaseException:
                self.conn.rollback()
                raise

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        try:
            with self._lock:
                cursor = self.conn.cursor()
                cursor.execute(sql, params)
                return cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Query failed: {e}") from e

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            with self._lock:
                cursor = self.conn.cursor()
                cursor.execute(sql, params)
                return cursor.fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Query failed: {e}") from e

    @contextmanager
    def session_lock(self, session_id: int) -> Iterator[None]:
        with self._session_locks_guard:
            lock = self._session_locks.setdefault(session_id, threading.RLock())
        with lock:
            yield

    def _owner_clause(self, owner_id: int | None) -> tuple[str, tuple]:
        if owner_id is None:
            return "", ()
        return " AND owner_id = ?", (owner_id,)

    def _session_exists(
        self, cursor: sqlite3.Cursor, session_id: int, owner_id: int | None
    ) -> bool:
        clause, params = self._owner_clause(owner_id)
        cursor.execute(f"SELECT 1 FROM sessions WHERE id = ?{clause}", (session_id, *params))
        return cursor.fetchone() is not None

    def _insert_messages(
        self, cursor: sqlite3.Cursor, session_id: int, messages: Sequence[Message], now: str
    ) -> list[int]:
        ids = []
        for message in messages:
            cursor.execute(
                """
                INSERT INTO messages
                (session_id, role, content, thinking, model, preset_id, tool_calls, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    message.role,
                    self.codec.seal(message.content),
                    self.codec.seal_optional(message.thinking),
                    message.model,
                    message.preset_id,
                    self.codec.seal_optional(
                        json.dumps(message.tool_calls) if message.tool_calls else None
                    ),
                    now,
                ),
            )
            ids.append(int(cursor.lastrowid))
        return ids

    def create_session(
        self,
        model: str,
        messages: Sequence[Message] = (),
        owner_id: int | None = None,
        title: str | None = None,
        project_path: str | None = None,
        system_prompt_snapshot: str | None = None,
    ) -> tuple[int, list[int]]:
        now = _now_iso()
        with self._write("create session") as cursor:
            cursor.execute(
                """
                INSERT INTO sessions
                (model, created_at, updated_at, title, project_path, system_prompt_snapshot, owner_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (model, now, now, title, project_path, system_prompt_snapshot, owner_id),
            )
            session_id = int(cursor.lastrowid)
            message_ids = self._insert_messages(cursor, session_id, messages, now)
        logger.debug("Created session %s with %d messages", session_id, len(message_ids))
        return session_id, message_ids

    def append_messages(
        self, session_id: int, messages: Sequence[Message], owner_id: int | None = None
    ) -> list[int]:
        now = _now_iso()
        with self._write("append messages") as cursor:
            if not self._session_exists(cursor, session_id, owner_id):
                raise SessionNotFoundError(session_id)
            message_ids = self._insert_messages(cursor, session_id, messages, now)
            if message_ids:
                cursor.execute(
                    "UPDATE sessions SET updated_at = ? WHERE id = ?", (now, session_id)
                )
        logger.debug("Appended %d messages to session %s", len(message_ids), session_id)
        return message_ids

    def get_session(self, session_id: int, owner_id: int | None = None) -> SessionData | None:
        clause, params = self._owner_clause(owner_id)
        row = self._fetchone(
            f"SELECT * FROM sessions WHERE id = ?{clause}", (session_id, *params)
        )
        if not row:
            return None
        rows = self._fetchall(
            "SELECT * FROM messages WHERE session_id = ? AND deleted_at IS NULL ORDER BY id ASC",
            (session_id,),
        )
        return SessionData(
            session=self._row_to_session(row),
            messages=[self._row_to_message(r) for r in rows],
        )

    def require_session(self, session_id: int, owner_id: int | None = None) -> SessionData:
        data = self.get_session(session_id, owner_id)
        if data is None:
            raise SessionNotFoundError(session_id)
        return data

    def soft_delete_after_turn(
        self, session_id: int, turn_number: int, owner_id: int | None = None
    ) -> int:
        """Soft-delete every message after turn ``turn_number``.

        Turn k starts at the k-th live user message; the rows before the first
        user message belong to no turn and survive any rewind.
        """
        if turn_number < 0:
            raise ValueError("turn_number must be >= 0")
        now = _now_iso()
        with self._write("rewind session") as cursor:
            if not self._session_exists(cursor, session_id, owner_id):
                raise SessionNotFoundError(session_id)
            cursor.execute(
                """
                SELECT id FROM messages
                WHERE session_id = ? AND role = 'user' AND deleted_at IS NULL
                ORDER BY id ASC
                """,
                (session_id,),
            )
            user_ids = [r[0] for r in cursor.fetchall()]
            if turn_number >= len(user_ids):
                return 0
            cursor.execute(
                """
                UPDATE messages SET deleted_at = ?
                WHERE session_id = ? AND id >= ? AND deleted_at IS NULL
                """,
                (now, session_id, user_ids[turn_number]),
            )
            deleted = cursor.rowcount
            cursor.execute("UPDATE sessions SET updated_at = ? WHERE id = ?", (now, session_id))
        logger.info(
            "Soft-deleted %d messages after turn %d of session %s", deleted, turn_number, session_id
        )
        return deleted

    def soft_delete_messages(
        self, session_id: int, message_ids: Sequence[int], owner_id: int | None = None
    ) -> int:
        if not message_ids:
            return 0
        now = _now_iso()
        placeholders = ",".join("?" for _ in message_ids)
        with self._write("delete messages") as cursor:
            if not self._session_exists(cursor, session_id, owner_id):
                raise SessionNotFoundError(session_id)
            cursor.execute(
                f"""
                UPDATE messages SET deleted_at = ?
                WHERE session_id = ? AND deleted_at IS NULL AND id IN ({placeholders})
                """,
                (now, session_id, *message_ids),
            )
            deleted = cursor.rowcount
            cursor.execute("UPDATE sessions SET updated_at = ? WHERE id = ?", (now, session_id))
        return deleted

    def _update_session_field(
        self, session_id: int, column: str, value: str, owner_id: int | None
    ) -> bool:
        clause, params = self._owner_clause(owner_id)
        with self._write(f"update session {column}") as cursor:
            cursor.execute(
                f"UPDATE sessions SET {column} = ?, updated_at = ? WHERE id = ?{clause}",
                (value, _now_iso(), session_id, *params),
            )
            return cursor.rowcount > 0

    def update_model(self, session_id: int, model: str, owner_id: int | None = None) -> bool:
        return self._update_session_field(session_id, "model", model, owner_id)

    def update_title(self, session_id: int, title: str, owner_id: int | None = None) -> bool:
        return self._update_session_field(session_id, "title", title, owner_id)

    def delete_session(self, session_id: int, owner_id: int | None = None) -> bool:
        with self._write("delete session") as cursor:
            if not self._session_exists(cursor, session_id, owner_id):
                return False
            cursor.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            cursor.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        logger.info("Deleted session %s", session_id)
        return True

    def count_messages(self, session_id: int) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) FROM messages WHERE session_id = ? AND deleted_at IS NULL",
            (session_id,),
        )
        return int(row[0] if row else 0)

    def list_sessions(self, owner_id: int | None = None, limit: int = 200) -> list[SessionSummary]:
        where, params = ("WHERE s.owner_id = ?", (owner_id,)) if owner_id is not None else ("", ())
        rows = self._fetchall(
            f"""
            SELECT
                s.*,
                COUNT(m.id) AS message_count,
                (
                    SELECT content FROM messages
                    WHERE session_id = s.id AND role = 'user' AND deleted_at IS NULL
                    ORDER BY id ASC LIMIT 1
                ) AS preview
            FROM sessions s
            LEFT JOIN messages m ON s.id = m.session_id AND m.deleted_at IS NULL
            {where}
            GROUP BY s.id
            ORDER BY s.updated_at DESC
            LIMIT ?
            """,
            (*params, limit),
        )
        summaries = []
        for row in rows:
            preview = self.codec.open_optional(row["preview"])
            if preview and len(preview) > PREVIEW_LENGTH:
                preview = preview[:PREVIEW_LENGTH] + "..."
            summaries.append(
                SessionSummary(
                    id=row["id"],
                    model=row["model"],
                    created_at=row["created_at"],
                    updated_at=row["updated_at"],
                    title=row["title"],
                    message_count=row["message_count"],
                    preview=preview,
                )
            )
        return summaries

    def export_session(
        self, session_id: int, path: str | Path, owner_id: int | None = None
    ) -> Path:
        data = self.require_session(session_id, owner_id)
        target = atomic_write_json(path, data.model_dump(mode="json"))
        logger.info("Exported session %s to %s", session_id, target)
        return target

    def list_parameter_presets(self) -> list[ParameterPreset]:
        rows = self._fetchall("SELECT * FROM parameter_presets ORDER BY id ASC")
        return [self._row_to_preset(row) for row in rows]

    def get_parameter_preset(self, preset_id: int) -> ParameterPreset | None:
        row = self._fetchone("SELECT * FROM parameter_presets WHERE id = ?", (preset_id,))
        return self._row_to_preset(row) if row else None

    def get_parameter_preset_by_name(self, name: str) -> ParameterPreset | None:
        row = self._fetchone("SELECT * FROM parameter_presets WHERE name = ?", (name,))
        return self._row_to_preset(row) if row else None

    def get_default_prompt(self) -> str | None:
        row = self._fetchone(
            "SELECT system_prompt FROM default_prompt ORDER BY id DESC LIMIT 1"
        )
        return row[0] if row else None

    def set_default_prompt(self, system_prompt: str, description: str | None = None) -> None:
        with self._write("set default prompt") as cursor:
            cursor.execute(
                "INSERT INTO default_prompt (system_prompt, description, updated_at) VALUES (?, ?, ?)",
                (system_prompt, description, _now_iso()),
            )

    def _row_to_session(self, row: sqlite3.Row) -> SessionRecord:
        return SessionRecord(
            id=row["id"],
            model=row["model"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            title=row["title"],
            project_path=row["project_path"],
            system_prompt_snapshot=row["system_prompt_snapshot"],
            owner_id=row["owner_id"],
        )

    def _row_to_message(self, row: sqlite3.Row) -> MessageRecord:
        tool_calls = self.codec.open_optional(row["tool_calls"])
        return MessageRecord(
            id=row["id"],
            session_id=row["session_id"],
            role=row["role"],
            content=self.codec.open(row["content"]),
            thinking=self.codec.open_optional(row["thinking"]),
            model=row["model"],
            preset_id=row["preset_id"],
            tool_calls=json.loads(tool_calls) if tool_calls else None,
            created_at=row["created_at"],
        )

    def _row_to_preset(self, row: sqlite3.Row) -> ParameterPreset:
        return ParameterPreset(
            id=row["id"],
            name=row["name"],
            display_name=row["display_name"],
            description=row["description"],
            temperature=row["temperature"],
            top_p=row["top_p"],
            top_k=row["top_k"],
            repeat_penalty=row["repeat_penalty"],
            num_ctx=row["num_ctx"],
        )
