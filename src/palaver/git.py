import re
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from palaver.errors import PalaverError


class GitError(PalaverError):
    def __init__(self, message: str, stderr: str = ""):
        detail = stderr.strip()
        super().__init__(f"{message}: {detail}" if detail else message)
        self.stderr = stderr


def is_git_repository(path: str | Path) -> bool:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--is-inside-work-tree"],
            cwd=path,
            capture_output=True,
            text=True,
        )
    except (FileNotFoundError, NotADirectoryError):
        return False
    return result.returncode == 0 and result.stdout.strip() == "true"


class GitRepo:
    def __init__(self, root_path: str):
        self.root_path = Path(root_path)
        self._ensure_git_repo()

    def _ensure_git_repo(self):
        if not is_git_repository(self.root_path):
            raise GitError(f"Not a git repository: {self.root_path}")

    def _run(self, args: List[str], action: str) -> str:
        result = subprocess.run(
            ["git", *args],
            cwd=self.root_path,
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            raise GitError(f"Failed to {action}", result.stderr)
        return result.stdout

    def current_branch(self) -> str:
        return self._run(["rev-parse", "--abbrev-ref", "HEAD"], "get current branch").strip()

    def get_status(self) -> Dict[str, Any]:
        output = self._run(["status", "--porcelain=v1", "--branch"], "get status")

        branch = ""
        ahead = behind = 0
        staged: List[str] = []
        unstaged: List[str] = []
        untracked: List[str] = []

        for line in output.splitlines():
            if line.startswith("## "):
                header = line[3:]
                branch = header.split("...")[0].replace("No commits yet on ", "")
                ahead_match = re.search(r"ahead (\d+)", header)
                behind_match = re.search(r"behind (\d+)", header)
                ahead = int(ahead_match.group(1)) if ahead_match else 0
                behind = int(behind_match.group(1)) if behind_match else 0
                continue
            if not line.strip():
                continue

            code, path = line[:2], line[3:]
            if code == "??":
                untracked.append(path)
                continue
            if code[0] != " ":
                staged.append(path)
            if code[1] != " ":
                unstaged.append(path)

        return {
            "branch": branch,
            "ahead": ahead,
            "behind": behind,
            "staged": staged,
            "unstaged": unstaged,
            "untracked": untracked,
        }

    def get_diff(self, file: Optional[str] = None, staged: bool = False) -> str:
        args = ["diff"]
        if staged:
            args.append("--cached")
        if file:
            args.extend(["--", file])
        return self._run(args, "get diff")

    def create_branch(self, branch_name: str, from_branch: Optional[str] = None) -> str:
        args = ["checkout", "-b", branch_name]
        if from_branch:
            args.append(from_branch)
        self._run(args, "create branch")
        return self.current_branch()

    def commit(self, message: str, files: Optional[List[str]] = None) -> Tuple[str, str]:
        self._run(["add", "--", *(files or ["."])], "add files")
        self._run(["commit", "-m", message], "commit")
        commit_hash = self._run(["rev-parse", "HEAD"], "read commit hash").strip()
        return (commit_hash, message)

    def recent_commits(self, limit: int = 10) -> List[Dict[str, str]]:
        output = self._run(
            ["log", "--pretty=format:%H|%an|%ad|%s", "--date=iso", "-n", str(limit)],
            "get commit history",
        )
        commits = []
        for line in output.splitlines():
            if not line.strip():
                continue
            commit_hash, author, date, message = line.split("|", 3)
            commits.append(
                {"hash": commit_hash, "author": author, "date": date, "message": message}
            )
        return commits
