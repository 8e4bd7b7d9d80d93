"""File tools: view_file, create_file, str_replace_editor, replace_lines."""

import difflib
import logging
from typing import Any, Optional

from backend import Backend, LocalBackend
from tools._common import ToolResult

logger = logging.getLogger(__name__)

_MAX_FULL_READ_LINES = 2000


def _require_path(path: str, name: str = "path") -> Optional[ToolResult]:
    if not (path or "").strip():
        return ToolResult(success=False, output="", error=f"{name} is required")
    return None


def _compact_diff(old_content: str, new_content: str, path: str, max_lines: int = 60) -> str:
    """Generate a compact unified diff for the tool output."""
    old_lines = old_content.splitlines(keepends=True)
    new_lines = new_content.splitlines(keepends=True)
    diff = list(difflib.unified_diff(old_lines, new_lines, fromfile=path, tofile=path, lineterm=""))
    if not diff:
        return ""
    if len(diff) > max_lines:
        diff = diff[:max_lines] + [f"... ({len(diff) - max_lines} more diff lines)"]
    return "\n".join(line.rstrip() for line in diff)


def view_file(path: str, start_line: Optional[int] = None, end_line: Optional[int] = None,
              backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Read a file (or a line range of it). Returns line-numbered content."""
    err = _require_path(path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        if not b.file_exists(path):
            return ToolResult(success=False, output="", error=f"File not found: {path}",
                              file_path=path, operation="view")
        if b.is_dir(path):
            entries = b.list_dir(path)
            listing = "\n".join(
                f"  {e['name']}/" if e["type"] == "directory" else f"  {e['name']}" for e in entries
            )
            return ToolResult(success=True, output=f"Directory {path}:\n{listing}",
                              file_path=path, operation="view")

        lines = b.read_file(path).splitlines()
        total = len(lines)
        start = max((start_line or 1) - 1, 0)
        end = min(end_line or total, total)
        if start_line is None and end_line is None and total > _MAX_FULL_READ_LINES:
            end = _MAX_FULL_READ_LINES
        numbered = [f"{start + i + 1:6}|{line}" for i, line in enumerate(lines[start:end])]
        header = f"[{total} lines total]"
        if start > 0 or end < total:
            header += f" (showing lines {start + 1}-{end})"
        return ToolResult(success=True, output=header + "\n" + "\n".join(numbered),
                          file_path=path, operation="view")
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e), file_path=path, operation="view")


def create_file(path: str, content: str,
                backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Create a new file or completely overwrite an existing one."""
    err = _require_path(path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        existed = b.file_exists(path)
        old_content = b.read_file(path) if existed else ""
        b.write_file(path, content)
        line_count = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        summary = f"{'Wrote' if existed else 'Created'} {line_count} lines to {path}"
        diff_text = _compact_diff(old_content, content, path) if existed else ""
        return ToolResult(success=True, output=f"{summary}\n{diff_text}" if diff_text else summary,
                          file_path=path, operation="create")
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e), file_path=path, operation="create")


def str_replace_editor(path: str, old_str: str, new_str: str, replace_all: bool = False,
                       backend: Optional[Backend] = None, working_directory: str = ".",
                       **kw: Any) -> ToolResult:
    """Replace an exact string in a file. Must match exactly one location unless replace_all."""
    err = _require_path(path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        if not b.file_exists(path):
            return ToolResult(success=False, output="", error=f"File not found: {path}",
                              file_path=path, operation="str_replace")
        content = b.read_file(path)
        count = content.count(old_str) if old_str else 0
        if count == 0:
            return ToolResult(success=False, output="",
                              error=f"old_str not found in {path}. Re-read the file to see current content.",
                              file_path=path, operation="str_replace")
        if count > 1 and not replace_all:
            return ToolResult(success=False, output="",
                              error=f"Found {count} occurrences of old_str in {path}. "
                                    f"Add surrounding context or set replace_all=true.",
                              file_path=path, operation="str_replace")
        new_content = content.replace(old_str, new_str) if replace_all else content.replace(old_str, new_str, 1)
        b.write_file(path, new_content)
        diff_text = _compact_diff(content, new_content, path)
        summary = f"Applied edit to {path}" + (f" ({count} replacements)" if replace_all and count > 1 else "")
        return ToolResult(success=True, output=f"{summary}\n{diff_text}" if diff_text else summary,
                          file_path=path, operation="str_replace")
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e), file_path=path, operation="str_replace")


def replace_lines(path: str, start_line: int, end_line: int, new_content: str,
                  backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Replace an inclusive 1-based line range with new content."""
    err = _require_path(path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        if not b.file_exists(path):
            return ToolResult(success=False, output="", error=f"File not found: {path}",
                              file_path=path, operation="replace_lines")
        content = b.read_file(path)
        lines = content.split("\n")
        if start_line < 1 or end_line < start_line or start_line > len(lines):
            return ToolResult(success=False, output="",
                              error=f"Invalid line range {start_line}-{end_line} for {path} ({len(lines)} lines)",
                              file_path=path, operation="replace_lines")
        lines[start_line - 1:end_line] = new_content.split("\n")
        updated = "\n".join(lines)
        b.write_file(path, updated)
        diff_text = _compact_diff(content, updated, path)
        summary = f"Replaced lines {start_line}-{end_line} in {path}"
        return ToolResult(success=True, output=f"{summary}\n{diff_text}" if diff_text else summary,
                          file_path=path, operation="replace_lines")
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e), file_path=path, operation="replace_lines")
