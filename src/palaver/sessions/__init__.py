from palaver.sessions.schema import MessageRecord, ParameterPreset, SessionData, SessionRecord
from palaver.sessions.store import HistoryStore, SessionNotFoundError, StorageError

__all__ = [
    "HistoryStore",
    "MessageRecord",
    "ParameterPreset",
    "SessionData",
    "SessionNotFoundError",
    "SessionRecord",
    "StorageError",
]
