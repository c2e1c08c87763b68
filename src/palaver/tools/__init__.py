from palaver.tools.catalog import build_tool_registry
from palaver.tools.registry import ToolRegistry, ToolResult

__all__ = ["ToolRegistry", "ToolResult", "build_tool_registry"]
