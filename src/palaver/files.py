import fnmatch
import json
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Set

from palaver.errors import PalaverError


IGNORED_DIRS: Set[str] = {
    ".venv",
    "venv",
    ".git",
    "node_modules",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    ".next",
    "dist",
    "build",
    ".eggs",
}

MAX_FILES = 500
MAX_FILE_SIZE = 1024 * 1024
MAX_SEARCH_MATCHES = 200


class SandboxError(PalaverError):
    pass


class AccessDenied(SandboxError):
    def __init__(self):
        super().__init__("Access denied - path outside project directory")


class FileManager:
    """File operations confined to ``root_path``.

    Every relative path goes through :meth:`resolve`; nothing outside the root
    is ever read, listed or written.
    """

    def __init__(self, root_path: str):
        self.root_path = Path(root_path).resolve()

    def resolve(self, filepath: str) -> Path:
        target = (self.root_path / (filepath or ".")).resolve()
        if target != self.root_path and self.root_path not in target.parents:
            raise AccessDenied()
        return target

    def contains(self, path: Path) -> bool:
        """True when `path`, with symlinks followed, stays inside the root."""
        try:
            target = path.resolve()
        except (OSError, RuntimeError):
            return False
        return target == self.root_path or self.root_path in target.parents

    def read_file(self, filepath: str) -> str:
        full_path = self.resolve(filepath)
        if not full_path.exists():
            raise SandboxError(f"File not found: {filepath}")
        if full_path.is_dir():
            raise SandboxError(
                f'"{filepath}" is a directory, not a file. Use list_files instead.'
            )
        size = full_path.stat().st_size
        if size > MAX_FILE_SIZE:
            raise SandboxError(
                f"File too large ({size / 1024 / 1024:.2f}MB). Maximum size is 1MB."
            )
        try:
            return full_path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            raise SandboxError(f"{filepath} is not a UTF-8 text file")

    def write_file(self, filepath: str, content: str) -> None:
        full_path = self.resolve(filepath)
        if full_path == self.root_path or full_path.is_dir():
            raise SandboxError(f'"{filepath}" is a directory')
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")

    def list_directory(self, directory: str) -> str:
        normalized = "" if directory in ("", ".") else directory
        full_path = self.resolve(normalized)
        label = directory or "(root)"
        if not full_path.exists():
            raise SandboxError(f"Directory not found: {label}")
        if not full_path.is_dir():
            raise SandboxError(
                f'"{directory}" is a file, not a directory. Use read_file instead.'
            )

        directories: List[str] = []
        files: List[str] = []
        for entry in full_path.iterdir():
            if entry.name.startswith(".") or not self.contains(entry):
                continue
            if entry.is_dir():
                directories.append(entry.name + "/")
            elif entry.is_file():
                files.append(entry.name)

        result = {
            "directory": label,
            "directories": sorted(directories),
            "files": sorted(files),
            "total": len(directories) + len(files),
        }
        return json.dumps(result, indent=2)

    def list_files(self, directory: str = "", pattern: str = "*") -> List[str]:
        base = self.resolve("" if directory in ("", ".") else directory)
        if ".." in Path(pattern).parts or pattern.startswith(("/", "\\")):
            raise AccessDenied()
        if not base.is_dir():
            raise SandboxError(f"Directory not found: {directory or '(root)'}")

        files = []
        for path in base.rglob(pattern):
            if not path.is_file() or not self.contains(path):
                continue
            rel_path = path.relative_to(self.root_path)
            if self._should_ignore(rel_path):
                continue
            files.append(rel_path.as_posix())
            if len(files) >= MAX_FILES:
                break
        return sorted(files)

    def search(self, query: str, file_pattern: Optional[str] = None) -> List[Dict[str, object]]:
        try:
            regex = re.compile(query)
        except re.error:
            regex = re.compile(re.escape(query))

        matches: List[Dict[str, object]] = []
        for dirpath, dirnames, filenames in os.walk(self.root_path):
            dirnames[:] = sorted(
                d for d in dirnames if d not in IGNORED_DIRS and not d.startswith(".")
            )
            for name in sorted(filenames):
                if file_pattern and not fnmatch.fnmatch(name, file_pattern):
                    continue
                path = Path(dirpath) / name
                if not path.is_file() or not self.contains(path):
                    continue
                try:
                    if path.stat().st_size > MAX_FILE_SIZE:
                        continue
                    lines = path.read_text(encoding="utf-8").splitlines()
                except (UnicodeDecodeError, OSError):
                    continue
                rel = path.relative_to(self.root_path).as_posix()
                for lineno, line in enumerate(lines, start=1):
                    if regex.search(line):
                        matches.append({"file": rel, "line": lineno, "text": line.strip()})
                        if len(matches) >= MAX_SEARCH_MATCHES:
                            return matches
        return matches

    def file_tree(self, max_depth: int = 3) -> str:
        tree = [self.root_path.name + "/"]

        def traverse(directory: Path, depth: int, prefix: str) -> None:
            if depth > max_depth:
                return
            entries = [
                e
                for e in directory.iterdir()
                if e.name not in IGNORED_DIRS
                and not e.name.startswith(".")
                and self.contains(e)
            ]
            entries.sort(key=lambda e: (not e.is_dir(), e.name))
            for index, entry in enumerate(entries):
                is_last = index == len(entries) - 1
                connector = "└── " if is_last else "├── "
                name = entry.name + "/" if entry.is_dir() else entry.name
                tree.append(f"{prefix}{connector}{name}")
                if entry.is_dir() and not entry.is_symlink():
                    traverse(entry, depth + 1, prefix + ("    " if is_last else "│   "))

        traverse(self.root_path, 0, "")
        return "\n".join(tree)

    def _should_ignore(self, rel_path: Path) -> bool:
        parts = rel_path.parts
        for part in parts:
            if part in IGNORED_DIRS:
                return True
            if part.startswith(".") and part not in {".env", ".gitignore"}:
                return True
        return False
