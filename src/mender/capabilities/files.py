"""File capabilities scoped to a workspace directory.

Paths given by the oracle are resolved against the workspace root. Anything
that resolves outside it is rejected before the filesystem is touched.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from mender.capabilities.models import SemanticType, param
from mender.capabilities.registry import capability
from mender.exceptions import LineRangeError, WorkspaceViolationError

logger = logging.getLogger(__name__)

_SKIPPED_DIRS = frozenset({"build", "outputs", "__pycache__", "node_modules"})
_MAX_LISTED_FILES = 500


def read_source(path: Path, errors: str = "strict") -> str:
    """Read a UTF-8 text file without translating its line endings."""
    with open(path, encoding="utf-8", errors=errors, newline="") as fh:
        return fh.read()


def write_source(path: Path, text: str) -> None:
    """Write *text* verbatim; line endings are not translated."""
    with open(path, "w", encoding="utf-8", newline="") as fh:
        fh.write(text)


def _line_ending(lines: list[str]) -> str:
    for line in lines:
        if line.endswith("\r\n"):
            return "\r\n"
        if line.endswith("\n"):
            return "\n"
    return "\n"


def number_lines(lines: list[str], first: int = 1) -> str:
    """Format lines as ``"N: text"``, one per output line."""
    out = []
    for number, line in enumerate(lines, start=first):
        text = line.rstrip("\r\n")
        out.append(f"{number}: {text}\n")
    return "".join(out)


def replace_line_range(text: str, start_line: int, end_line: int, new_content: str) -> str:
    """Replace the inclusive 1-based range ``start_line..end_line`` of *text*.

    Lines outside the range keep their exact bytes, including their line
    terminators. An empty ``new_content`` deletes the range.

    Raises:
        LineRangeError: If ``start_line < 1``, ``end_line`` is past the last
            line, or ``start_line > end_line``.
    """
    lines = text.splitlines(keepends=True)
    if start_line < 1 or end_line > len(lines) or start_line > end_line:
        raise LineRangeError(start_line, end_line, len(lines))

    eol = _line_ending(lines)
    replacement = [line + eol for line in new_content.splitlines()]
    last_replaced = lines[end_line - 1]
    if replacement and not last_replaced.endswith(("\n", "\r")):
        # The range ran to the end of a file with no trailing newline
        replacement[-1] = replacement[-1].rstrip("\r\n")

    return "".join(lines[: start_line - 1] + replacement + lines[end_line:])


class FileCapabilities:
    """Read and edit files under one workspace root.

    Registered with ``CapabilityRegistry.register_instance``. Each session
    gets its own instance so sessions cannot touch each other's files.

    Args:
        workspace: Root directory. All paths must resolve inside it.
        default_artifact: Relative path used when the oracle passes the
            workspace directory itself instead of a file.
    """

    def __init__(self, workspace: str | Path, default_artifact: str | None = None) -> None:
        self.workspace = Path(workspace).resolve()
        self.default_artifact = default_artifact

    def resolve(self, file_path: str) -> Path:
        """Resolve *file_path* inside the workspace.

        Raises:
            WorkspaceViolationError: If the path escapes the workspace.
        """
        candidate = Path(file_path)
        if not candidate.is_absolute():
            candidate = self.workspace / candidate
        resolved = candidate.resolve()
        if resolved != self.workspace and self.workspace not in resolved.parents:
            raise WorkspaceViolationError(file_path, str(self.workspace))
        if resolved.is_dir() and self.default_artifact:
            resolved = (resolved / self.default_artifact).resolve()
        return resolved

    def _read_lines(self, file_path: str) -> tuple[Path, list[str]]:
        path = self.resolve(file_path)
        if not path.is_file():
            raise FileNotFoundError(f"File does not exist -> {file_path}")
        return path, read_source(path).splitlines(keepends=True)

    @capability(
        name="read_file_with_line_numbers",
        parameters=[
            param("file_path", SemanticType.STRING, "Path of the file to read"),
        ],
    )
    def read_file_with_line_numbers(self, file_path: str) -> str:
        """Read a whole file, prefixing every line with its 1-based number."""
        _, lines = self._read_lines(file_path)
        return number_lines(lines)

    @capability(
        name="read_file_lines",
        parameters=[
            param("file_path", SemanticType.STRING, "Path of the file to read"),
            param("start_line", SemanticType.INTEGER, "First line (1-based, inclusive)"),
            param("end_line", SemanticType.INTEGER, "Last line (1-based, inclusive)"),
        ],
    )
    def read_file_lines(self, file_path: str, start_line: int, end_line: int) -> str:
        """Read an inclusive 1-based line range and return the numbered lines.

        An end line past the end of the file is clamped to the last line.
        """
        if start_line < 1 or end_line < 1:
            raise ValueError("Line numbers must be >= 1")
        if start_line > end_line:
            raise ValueError("Start line must be <= end line")
        _, lines = self._read_lines(file_path)
        if start_line > len(lines):
            raise LineRangeError(start_line, end_line, len(lines))
        end = min(end_line, len(lines))
        return number_lines(lines[start_line - 1 : end], first=start_line)

    @capability(
        name="edit_file",
        parameters=[
            param("file_path", SemanticType.STRING, "Path of the file to modify"),
            param("start_line", SemanticType.INTEGER, "First line to replace (1-based)"),
            param("end_line", SemanticType.INTEGER, "Last line to replace (1-based, inclusive)"),
            param("new_content", SemanticType.STRING, "Replacement lines"),
        ],
        mutating=True,
    )
    def edit_file(self, file_path: str, start_line: int, end_line: int, new_content: str) -> str:
        """Replace an inclusive 1-based range of lines with new content."""
        path, _ = self._read_lines(file_path)
        original = read_source(path)
        updated = replace_line_range(original, start_line, end_line, new_content)
        write_source(path, updated)
        logger.debug("Edited %s lines %d-%d", path, start_line, end_line)
        return f"Patch applied successfully to {file_path} (lines {start_line}-{end_line})"

    @capability(
        name="replace_text",
        parameters=[
            param("file_path", SemanticType.STRING, "Path of the file to modify"),
            param("search", SemanticType.STRING, "Text (or regular expression) to look for"),
            param("replace", SemanticType.STRING, "Replacement text"),
            param(
                "regex",
                SemanticType.BOOLEAN,
                "Treat search as a regular expression",
                default="false",
            ),
        ],
        mutating=True,
    )
    def replace_text(self, file_path: str, search: str, replace: str, regex: bool = False) -> dict:
        """Replace the first occurrence of a text or pattern in a file."""
        path, _ = self._read_lines(file_path)
        content = read_source(path)
        if regex:
            updated, count = re.subn(search, replace, content, count=1)
            if count == 0:
                raise ValueError(f"pattern not found: {search!r}")
        else:
            index = content.find(search)
            if index < 0:
                raise ValueError(f"text not found: {search!r}")
            updated = content[:index] + replace + content[index + len(search) :]

        changed = updated != content
        if changed:
            write_source(path, updated)
        return {"path": str(path.relative_to(self.workspace)), "changed": changed}

    @capability(
        name="list_files",
        parameters=[
            param("directory", SemanticType.STRING, "Directory to list", default="."),
            param("pattern", SemanticType.STRING, "Glob matched against file names", default="*"),
        ],
    )
    def list_files(self, directory: str = ".", pattern: str = "*") -> str:
        """List the files under a workspace directory, recursively.

        Hidden entries and build output directories are skipped.
        """
        root = Path(directory)
        root = (self.workspace / root).resolve() if not root.is_absolute() else root.resolve()
        if root != self.workspace and self.workspace not in root.parents:
            raise WorkspaceViolationError(directory, str(self.workspace))
        if not root.is_dir():
            raise NotADirectoryError(f"Not a directory -> {directory}")

        found = []
        for path in sorted(root.rglob(pattern)):
            relative = path.relative_to(self.workspace)
            if any(part.startswith(".") or part in _SKIPPED_DIRS for part in relative.parts):
                continue
            if path.is_file():
                found.append(relative.as_posix())
            if len(found) >= _MAX_LISTED_FILES:
                found.append(f"... (truncated at {_MAX_LISTED_FILES} files)")
                break
        if not found:
            return f"No files matching {pattern!r} under {directory}"
        return "\n".join(found) + "\n"
