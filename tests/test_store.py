import json
import sqlite3

import pytest

from palaver.crypto import DecryptionError, FieldCodec, generate_key, is_envelope
from palaver.history import Message
from palaver.sessions.store import HistoryStore, SessionNotFoundError


def _conversation():
    return [
        Message(role="system", content="Be brief."),
        Message(role="user", content="What is 2+2?"),
        Message(role="assistant", content="4", model="m1", preset_id=1),
        Message(role="user", content="And 3+3?"),
        Message(role="assistant", content="6", thinking="add", model="m1"),
    ]


def _raw_rows(store, sql, params=()):
    conn = sqlite3.connect(store.db_path)
    try:
        return conn.execute(sql, params).fetchall()
    finally:
        conn.close()


class TestSessions:
    def test_create_and_get_keeps_order(self, store):
        session_id, ids = store.create_session("m1", _conversation(), title="Sums")

        data = store.get_session(session_id)

        assert len(ids) == 5
        assert data.session.model == "m1"
        assert data.session.title == "Sums"
        assert [m.id for m in data.messages] == ids
        assert [m.role for m in data.messages] == ["system", "user", "assistant", "user", "assistant"]
        assert data.messages[2].preset_id == 1
        assert data.messages[4].thinking == "add"

    def test_message_fields_are_sealed_at_rest(self, store):
        calls = [{"function": {"name": "read_file", "arguments": {"path": "a"}}}]
        session_id, _ = store.create_session(
            "m1",
            [
                Message(role="user", content="secret question"),
                Message(role="assistant", content="", tool_calls=calls, thinking="ponder"),
            ],
        )

        rows = _raw_rows(
            store,
            "SELECT content, thinking, tool_calls FROM messages WHERE session_id = ? ORDER BY id",
            (session_id,),
        )

        assert is_envelope(rows[0][0])
        assert "secret" not in rows[0][0]
        assert is_envelope(rows[1][1])
        assert is_envelope(rows[1][2])
        assert store.get_session(session_id).messages[1].tool_calls == calls

    def test_legacy_plaintext_rows_are_readable(self, store):
        session_id, _ = store.create_session("m1")
        conn = sqlite3.connect(store.db_path)
        conn.execute(
            "INSERT INTO messages (session_id, role, content, created_at) VALUES (?, ?, ?, ?)",
            (session_id, "user", "written before encryption", "2024-01-01T00:00:00"),
        )
        conn.commit()
        conn.close()

        assert store.get_session(session_id).messages[0].content == "written before encryption"

    def test_wrong_key_cannot_read(self, tmp_path, store):
        session_id, _ = store.create_session("m1", [Message(role="user", content="hi")])
        other = HistoryStore(tmp_path / "history.db", FieldCodec(generate_key()))
        try:
            with pytest.raises(DecryptionError):
                other.get_session(session_id)
        finally:
            other.close()

    def test_append_messages(self, store):
        session_id, _ = store.create_session("m1", _conversation()[:3])

        ids = store.append_messages(
            session_id,
            [Message(role="user", content="again"), Message(role="assistant", content="ok")],
        )

        assert len(ids) == 2
        assert store.count_messages(session_id) == 5

    def test_append_to_missing_session_raises(self, store):
        with pytest.raises(SessionNotFoundError):
            store.append_messages(999, [Message(role="user", content="hi")])

    def test_require_missing_session_raises(self, store):
        assert store.get_session(42) is None
        with pytest.raises(SessionNotFoundError, match="Session 42 not found"):
            store.require_session(42)


class TestOwnerScoping:
    def test_other_owner_sees_nothing(self, store):
        session_id, _ = store.create_session("m1", _conversation(), owner_id=1)

        assert store.get_session(session_id, owner_id=1) is not None
        assert store.get_session(session_id, owner_id=2) is None
        assert store.get_session(session_id) is not None
        assert not store.update_title(session_id, "stolen", owner_id=2)
        assert not store.delete_session(session_id, owner_id=2)
        with pytest.raises(SessionNotFoundError):
            store.append_messages(session_id, [Message(role="user", content="x")], owner_id=2)
        with pytest.raises(SessionNotFoundError):
            store.soft_delete_after_turn(session_id, 0, owner_id=2)

    def test_list_sessions_filters_by_owner(self, store):
        mine, _ = store.create_session("m1", owner_id=1)
        store.create_session("m1", owner_id=2)

        assert [s.id for s in store.list_sessions(owner_id=1)] == [mine]
        assert len(store.list_sessions()) == 2


class TestSoftDelete:
    def test_soft_delete_after_turn_keeps_preamble_and_earlier_turns(self, store):
        session_id, ids = store.create_session("m1", _conversation())

        deleted = store.soft_delete_after_turn(session_id, 1)

        data = store.get_session(session_id)
        assert deleted == 2
        assert [m.id for m in data.messages] == ids[:3]
        rows = _raw_rows(store, "SELECT COUNT(*) FROM messages WHERE session_id = ?", (session_id,))
        assert rows[0][0] == 5

    def test_rewind_to_zero_keeps_system_message(self, store):
        session_id, _ = store.create_session("m1", _conversation())

        store.soft_delete_after_turn(session_id, 0)

        assert [m.role for m in store.get_session(session_id).messages] == ["system"]

    def test_rewind_past_end_is_noop(self, store):
        session_id, _ = store.create_session("m1", _conversation())

        assert store.soft_delete_after_turn(session_id, 5) == 0
        assert store.count_messages(session_id) == 5

    def test_negative_turn_is_rejected(self, store):
        session_id, _ = store.create_session("m1", _conversation())

        with pytest.raises(ValueError):
            store.soft_delete_after_turn(session_id, -1)

    def test_soft_delete_messages(self, store):
        session_id, ids = store.create_session("m1", _conversation())

        assert store.soft_delete_messages(session_id, ids[3:]) == 2
        assert store.soft_delete_messages(session_id, ids[3:]) == 0
        assert store.soft_delete_messages(session_id, []) == 0
        assert store.count_messages(session_id) == 3


class TestSessionUpdates:
    def test_update_model_and_title(self, store):
        session_id, _ = store.create_session("m1")

        assert store.update_model(session_id, "m2")
        assert store.update_title(session_id, "New title")
        assert not store.update_model(999, "m2")

        session = store.get_session(session_id).session
        assert session.model == "m2"
        assert session.title == "New title"

    def test_delete_session_removes_messages(self, store):
        session_id, _ = store.create_session("m1", _conversation())

        assert store.delete_session(session_id)
        assert store.get_session(session_id) is None
        assert store.count_messages(session_id) == 0
        assert not store.delete_session(session_id)

    def test_list_sessions_preview_is_first_user_message(self, store):
        long_question = "x" * 100
        session_id, _ = store.create_session(
            "m1",
            [
                Message(role="system", content="sys"),
                Message(role="user", content=long_question),
                Message(role="assistant", content="ok"),
            ],
        )

        (summary,) = store.list_sessions()

        assert summary.id == session_id
        assert summary.message_count == 3
        assert summary.preview == "x" * 80 + "..."

    def test_export_session(self, store, tmp_path):
        session_id, _ = store.create_session("m1", _conversation(), title="Sums")

        target = store.export_session(session_id, tmp_path / "out" / "session.json")

        exported = json.loads(target.read_text())
        assert exported["session"]["title"] == "Sums"
        assert exported["messages"][1]["content"] == "What is 2+2?"

    def test_export_missing_session_raises(self, store, tmp_path):
        with pytest.raises(SessionNotFoundError):
            store.export_session(7, tmp_path / "nope.json")


class TestPresetsAndPrompt:
    def test_builtin_presets_are_seeded(self, store):
        presets = {p.name: p for p in store.list_parameter_presets()}

        assert set(presets) == {"default", "creative"}
        assert presets["default"].to_options() == {
            "temperature": 0.7,
            "top_p": 0.9,
            "top_k": 40,
            "repeat_penalty": 1.1,
        }
        assert presets["creative"].temperature == 1.0

    def test_get_preset_by_id_and_name(self, store):
        creative = store.get_parameter_preset_by_name("creative")

        assert store.get_parameter_preset(creative.id) == creative
        assert store.get_parameter_preset(999) is None
        assert store.get_parameter_preset_by_name("nope") is None

    def test_presets_are_seeded_once(self, tmp_path, codec):
        path = tmp_path / "again.db"
        HistoryStore(path, codec).close()
        reopened = HistoryStore(path, codec)
        try:
            assert len(reopened.list_parameter_presets()) == 2
        finally:
            reopened.close()

    def test_default_prompt_latest_wins(self, store):
        assert store.get_default_prompt() is None

        store.set_default_prompt("first")
        store.set_default_prompt("second", description="newer")

        assert store.get_default_prompt() == "second"
