import json
import logging
from pathlib import Path

from palaver.files import FileManager, SandboxError
from palaver.git import GitRepo, is_git_repository
from palaver.tools.args import (
    CommitChangesArgs,
    CreateBranchArgs,
    FileTreeArgs,
    GitDiffArgs,
    GitStatusArgs,
    ListFilesArgs,
    ReadFileArgs,
    RecentCommitsArgs,
    SearchCodeArgs,
    WriteFileArgs,
)
from palaver.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

TOOL_MODES = ("auto", "project", "repository")


def _no_params() -> dict:
    return {"type": "object", "properties": {}, "required": []}


def register_project_tools(tools: ToolRegistry, files: FileManager) -> None:
    tools.register_tool(
        name="read_file",
        description="Read the contents of a text file in the project.",
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path relative to the project root (e.g. src/main.py)",
                }
            },
            "required": ["path"],
        },
        args_model=ReadFileArgs,
        implementation=lambda args: files.read_file(args.path),
    )

    def list_files(args: ListFilesArgs) -> str:
        if not args.pattern:
            return files.list_directory(args.directory)
        matched = files.list_files(args.directory, args.pattern)
        return "\n".join(matched) if matched else "No files found"

    tools.register_tool(
        name="list_files",
        description="List files and subdirectories of a directory in the project.",
        parameters={
            "type": "object",
            "properties": {
                "directory": {
                    "type": "string",
                    "description": 'Directory relative to the project root. Use "" or "." for the root.',
                },
                "pattern": {
                    "type": "string",
                    "description": 'Optional glob to search recursively (e.g. "*.py")',
                },
            },
            "required": ["directory"],
        },
        args_model=ListFilesArgs,
        implementation=list_files,
    )


def register_repository_tools(tools: ToolRegistry, files: FileManager, git: GitRepo) -> None:
    register_project_tools(tools, files)

    def write_file(args: WriteFileArgs) -> str:
        files.write_file(args.path, args.content)
        return f"File {args.path} written successfully"

    tools.register_tool(
        name="write_file",
        description="Create or overwrite a file in the repository with the given content.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path relative to the repository root"},
                "content": {"type": "string", "description": "Complete file content"},
            },
            "required": ["path", "content"],
        },
        args_model=WriteFileArgs,
        implementation=write_file,
    )

    def search_code(args: SearchCodeArgs) -> str:
        matches = files.search(args.query, args.file_pattern)
        return json.dumps(
            {"query": args.query, "count": len(matches), "matches": matches}, indent=2
        )

    tools.register_tool(
        name="search_code",
        description="Search repository files for a regular expression or plain text.",
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Regex or text to search for"},
                "file_pattern": {
                    "type": "string",
                    "description": 'Optional filename glob (e.g. "*.py")',
                },
            },
            "required": ["query"],
        },
        args_model=SearchCodeArgs,
        implementation=search_code,
    )

    tools.register_tool(
        name="git_status",
        description="Show the current branch with staged, unstaged and untracked files.",
        parameters=_no_params(),
        args_model=GitStatusArgs,
        implementation=lambda args: json.dumps(git.get_status(), indent=2),
    )

    def git_diff(args: GitDiffArgs) -> str:
        file = None
        if args.file:
            file = files.resolve(args.file).relative_to(files.root_path).as_posix()
        return git.get_diff(file, args.staged) or "No changes"

    tools.register_tool(
        name="git_diff",
        description="Show the diff of uncommitted changes, optionally staged or for one file.",
        parameters={
            "type": "object",
            "properties": {
                "file": {"type": "string", "description": "Optional file to diff"},
                "staged": {"type": "boolean", "description": "Diff staged changes instead"},
            },
            "required": [],
        },
        args_model=GitDiffArgs,
        implementation=git_diff,
    )

    def create_branch(args: CreateBranchArgs) -> str:
        branch = git.create_branch(args.branch_name, args.from_branch)
        return f"Created and switched to branch: {branch}"

    tools.register_tool(
        name="create_branch",
        description="Create a new git branch and switch to it.",
        parameters={
            "type": "object",
            "properties": {
                "branch_name": {"type": "string", "description": "Name of the new branch"},
                "from_branch": {"type": "string", "description": "Optional starting branch"},
            },
            "required": ["branch_name"],
        },
        args_model=CreateBranchArgs,
        implementation=create_branch,
    )

    def commit_changes(args: CommitChangesArgs) -> str:
        paths = [
            files.resolve(path).relative_to(files.root_path).as_posix() for path in args.files
        ]
        commit_hash, message = git.commit(args.message, paths or None)
        return f"Committed {commit_hash[:8]}: {message}"

    tools.register_tool(
        name="commit_changes",
        description="Stage and commit changes. Commits everything when no files are given.",
        parameters={
            "type": "object",
            "properties": {
                "message": {"type": "string", "description": "Commit message"},
                "files": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Files to commit; empty commits all changes",
                },
            },
            "required": ["message"],
        },
        args_model=CommitChangesArgs,
        implementation=commit_changes,
    )

    tools.register_tool(
        name="get_file_tree",
        description="Show the repository's directory tree.",
        parameters={
            "type": "object",
            "properties": {
                "max_depth": {"type": "integer", "description": "Maximum depth (default 3)"}
            },
            "required": [],
        },
        args_model=FileTreeArgs,
        implementation=lambda args: files.file_tree(args.max_depth),
    )

    tools.register_tool(
        name="get_recent_commits",
        description="Show recent commit history.",
        parameters={
            "type": "object",
            "properties": {
                "limit": {"type": "integer", "description": "Number of commits (default 10)"}
            },
            "required": [],
        },
        args_model=RecentCommitsArgs,
        implementation=lambda args: json.dumps(git.recent_commits(args.limit), indent=2),
    )


def build_tool_registry(root_path: str | Path, mode: str = "auto") -> ToolRegistry:
    if mode not in TOOL_MODES:
        raise ValueError(f"Unknown tool mode: {mode}")

    files = FileManager(str(root_path))
    if not files.root_path.is_dir():
        raise SandboxError(f"Tool root is not a directory: {root_path}")

    tools = ToolRegistry(files)
    use_git = mode == "repository" or (mode == "auto" and is_git_repository(files.root_path))
    if use_git:
        register_repository_tools(tools, files, GitRepo(str(files.root_path)))
    else:
        register_project_tools(tools, files)
    logger.debug("Tool catalog for %s: %s", files.root_path, ", ".join(tools.names()))
    return tools
