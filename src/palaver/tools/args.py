"""Typed argument records for each tool.

Models send arguments as an open-ended object; each tool decodes it into one of
these records before running, so missing or mistyped fields become a tool error
the model can read instead of an exception inside the engine.
"""

from pydantic import BaseModel, ConfigDict, Field


class ToolArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ReadFileArgs(ToolArgs):
    path: str = Field(min_length=1)


class WriteFileArgs(ToolArgs):
    path: str = Field(min_length=1)
    content: str


class ListFilesArgs(ToolArgs):
    directory: str
    pattern: str | None = None


class SearchCodeArgs(ToolArgs):
    query: str = Field(min_length=1)
    file_pattern: str | None = None


class GitStatusArgs(ToolArgs):
    pass


class GitDiffArgs(ToolArgs):
    file: str | None = None
    staged: bool = False


class CreateBranchArgs(ToolArgs):
    branch_name: str = Field(min_length=1)
    from_branch: str | None = None


class CommitChangesArgs(ToolArgs):
    message: str = Field(min_length=1)
    files: list[str] = Field(default_factory=list)


class FileTreeArgs(ToolArgs):
    max_depth: int = Field(default=3, ge=0)


class RecentCommitsArgs(ToolArgs):
    limit: int = Field(default=10, ge=1, le=100)
