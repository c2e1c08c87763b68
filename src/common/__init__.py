from common import llm
from common.jsonio import atomic_write_json, to_json

__all__ = ["llm", "atomic_write_json", "to_json"]
