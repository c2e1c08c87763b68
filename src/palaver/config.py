import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from common.llm import CONTEXT_WINDOWS, DEFAULT_BASE_URL, DEFAULT_NUM_CTX
from palaver.errors import PalaverError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemma2:9b"
DEFAULT_DB_PATH = "~/.palaver/history.db"


class ConfigError(PalaverError):
    pass


def get_optional_env(name: str, default: str) -> str:
    return os.environ.get(name) or default


def get_int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"Environment variable {name} must be an integer, got {raw!r}") from e


def get_float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"Environment variable {name} must be a number, got {raw!r}") from e


@dataclass
class EngineConfig:
    base_url: str = field(default_factory=lambda: get_optional_env("OLLAMA_HOST", DEFAULT_BASE_URL))
    default_model: str = field(
        default_factory=lambda: get_optional_env("PALAVER_MODEL", DEFAULT_MODEL)
    )
    request_timeout: float = field(
        default_factory=lambda: get_float_env("PALAVER_REQUEST_TIMEOUT", 300.0)
    )
    max_tool_rounds: int = field(
        default_factory=lambda: get_int_env("PALAVER_MAX_TOOL_ROUNDS", 5)
    )
    context_windows: dict[str, int] = field(default_factory=lambda: dict(CONTEXT_WINDOWS))
    default_num_ctx: int = DEFAULT_NUM_CTX
    show_tool_activity: bool = True
    tool_mode: str = "auto"
    file_tree_depth: int = 3
    db_path: str = field(
        default_factory=lambda: get_optional_env("PALAVER_DB_PATH", DEFAULT_DB_PATH)
    )

    def __post_init__(self):
        if self.max_tool_rounds < 1:
            raise ConfigError("max_tool_rounds must be at least 1")
        if self.default_num_ctx < 1:
            raise ConfigError("default_num_ctx must be positive")
        if self.tool_mode not in ("auto", "project", "repository"):
            raise ConfigError(f"Unknown tool mode: {self.tool_mode}")
        if "://" not in self.base_url:
            self.base_url = f"http://{self.base_url}"

    @property
    def resolved_db_path(self) -> Path:
        return Path(self.db_path).expanduser()
