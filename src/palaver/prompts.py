import logging

from palaver.errors import PalaverError

logger = logging.getLogger(__name__)


DEFAULT_SYSTEM_PROMPT = """You are a helpful, knowledgeable assistant running on the user's own machine.
Answer clearly and accurately. When you are not sure about something, say so instead of guessing.
Prefer concise answers, and use Markdown code blocks for code.
"""

TOOL_GUIDANCE = """You are working with the project at: {root_path}

You can inspect this project through function calls:
{tool_list}

When a question is about the project, use the tools to read the relevant files
before answering. Cite file paths in your answers. Paths are relative to the
project root; files outside it cannot be accessed.
"""

FILE_TREE_HEADER = "Project file tree:"


def resolve_default_prompt(store) -> str:
    """Return the stored default instruction, or the built-in one.

    A failing lookup is logged and falls back to the built-in text.
    """
    if store is None:
        return DEFAULT_SYSTEM_PROMPT
    try:
        stored = store.get_default_prompt()
    except PalaverError as e:
        logger.warning("Could not load default prompt, using built-in one: %s", e)
        return DEFAULT_SYSTEM_PROMPT
    return stored or DEFAULT_SYSTEM_PROMPT


def build_system_prompt(
    base: str,
    root_path: str | None = None,
    tool_names: list[str] | None = None,
    file_tree: str | None = None,
) -> str:
    if root_path is None:
        return base

    sections = [base.rstrip()]
    tool_list = "\n".join(f"- {name}" for name in tool_names or [])
    sections.append(TOOL_GUIDANCE.format(root_path=root_path, tool_list=tool_list).rstrip())
    if file_tree:
        sections.append(f"{FILE_TREE_HEADER}\n```\n{file_tree}\n```")
    return "\n\n".join(sections) + "\n"
