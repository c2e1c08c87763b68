import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import ValidationError

from palaver.errors import PalaverError
from palaver.files import FileManager
from palaver.tools.args import ToolArgs

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ToolResult:
    success: bool
    output: str

    def to_content(self) -> str:
        return self.output if self.success else f"Error: {self.output}"


def _format_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        field = ".".join(str(part) for part in item["loc"]) or "arguments"
        problems.append(f"{field} ({item['msg']})")
    return "; ".join(problems)


class ToolRegistry:
    def __init__(self, files: Optional[FileManager] = None):
        self.files = files
        self.tools: Dict[str, Dict[str, Any]] = {}
        self.implementations: Dict[str, Callable[[Any], str]] = {}
        self.arg_models: Dict[str, Type[ToolArgs]] = {}

    def register_tool(
        self,
        name: str,
        description: str,
        parameters: Dict[str, Any],
        args_model: Type[ToolArgs],
        implementation: Callable[[Any], str],
    ):
        self.tools[name] = {
            "type": "function",
            "function": {
                "name": name,
                "description": description,
                "parameters": parameters,
            },
        }

        self.implementations[name] = implementation
        self.arg_models[name] = args_model

    def names(self) -> List[str]:
        return list(self.tools)

    def get_tool_schemas(self) -> List[Dict[str, Any]]:
        return list(self.tools.values())

    def execute_tool(self, name: str, arguments: Any) -> ToolResult:
        if name not in self.implementations:
            return ToolResult(False, f"Unknown tool: {name}")

        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                return ToolResult(False, f"Arguments for {name} are not valid JSON")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            return ToolResult(False, f"Arguments for {name} must be an object")

        try:
            args = self.arg_models[name].model_validate(arguments)
        except ValidationError as e:
            return ToolResult(
                False, f"Invalid arguments for {name}: {_format_validation_error(e)}"
            )

        try:
            return ToolResult(True, self.implementations[name](args))
        except (PalaverError, OSError) as e:
            logger.info("Tool %s failed: %s", name, e)
            return ToolResult(False, str(e))
        except Exception as e:
            logger.exception("Tool %s raised unexpectedly", name)
            return ToolResult(False, f"Tool {name} failed: {e}")
