"""Search tools: keyword file search and linter detection."""

import os
import shlex
import logging
from typing import Any, Dict, List, Optional, Tuple

from backend import Backend, LocalBackend
from tools._common import ToolResult
from tools.gitignore import _load_gitignore, _is_ignored, compile_patterns

logger = logging.getLogger(__name__)

_MAX_SCAN_BYTES = 512 * 1024


def _iter_project_files(root: str, include: Optional[str], exclude: Optional[str]):
    """Yield project-relative file paths, honouring .gitignore and skip lists."""
    gi = _load_gitignore(root)
    include_spec = compile_patterns([include]) if include else None
    exclude_spec = compile_patterns(exclude.split(",")) if exclude else None
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = os.path.relpath(dirpath, root)
        rel_dir = "" if rel_dir == "." else rel_dir
        dirnames[:] = sorted(
            d for d in dirnames
            if not d.startswith(".")
            and not _is_ignored(os.path.join(rel_dir, d) if rel_dir else d, d, True, gi)
        )
        for name in sorted(filenames):
            rel = os.path.join(rel_dir, name) if rel_dir else name
            rel = rel.replace(os.sep, "/")
            if _is_ignored(rel, name, False, gi):
                continue
            if include_spec and not include_spec.match_file(rel):
                continue
            if exclude_spec and exclude_spec.match_file(rel):
                continue
            yield rel


def _count_matches(full_path: str, terms: List[str]) -> int:
    try:
        if os.path.getsize(full_path) > _MAX_SCAN_BYTES:
            return 0
        with open(full_path, "r", encoding="utf-8", errors="ignore") as f:
            return sum(1 for line in f if any(t in line.lower() for t in terms))
    except OSError:
        return 0


def search_files(query: str, search_type: str = "both", include_pattern: Optional[str] = None,
                 exclude_pattern: Optional[str] = None, max_results: int = 50,
                 backend: Optional[Backend] = None, working_directory: str = ".",
                 **kw: Any) -> ToolResult:
    """Rank project files by keyword hits in their path and/or content.

    Output is one ``path (N matches)`` line per file, best first.
    """
    terms = [t.lower() for t in (query or "").split() if t.strip()]
    if not terms:
        return ToolResult(success=False, output="", error="query is required", operation="search")
    try:
        b = backend or LocalBackend(working_directory)
        root = b.working_directory
        scored: List[Tuple[int, str]] = []
        for rel in _iter_project_files(root, include_pattern, exclude_pattern):
            score = 0
            if search_type in ("both", "files"):
                score += sum(1 for t in terms if t in rel.lower())
            if search_type in ("both", "text"):
                score += _count_matches(os.path.join(root, rel), terms)
            if score:
                scored.append((score, rel))

        scored.sort(key=lambda item: (-item[0], item[1]))
        hits = scored[:max(1, max_results)]
        if not hits:
            return ToolResult(success=True, output=f"No matches found for: {query}", operation="search")
        lines = [f"Search results for \"{query}\":", f"Found: {len(hits)} files"]
        lines.extend(f"{rel} ({score} matches)" for score, rel in hits)
        return ToolResult(success=True, output="\n".join(lines), operation="search")
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e), operation="search")


class FileSearch:
    """Search collaborator for context gathering, backed by search_files."""

    def __init__(self, backend: Backend):
        self.backend = backend

    def search(self, query: str, options: Optional[Dict[str, Any]] = None) -> str:
        options = options or {}
        result = search_files(
            query,
            search_type=options.get("search_type", "both"),
            include_pattern=options.get("include_pattern"),
            exclude_pattern=options.get("exclude_pattern"),
            max_results=options.get("max_results", 10),
            backend=self.backend,
        )
        if not result.success:
            logger.warning(f"Search failed for {query!r}: {result.error}")
            return ""
        return result.output


def lint_command(path: str, backend: Backend) -> Optional[str]:
    """Pick a linter command for a file from project markers. None when nothing applies."""
    _, ext = os.path.splitext(path)
    ext = ext.lower()
    b = backend
    path = shlex.quote(path)

    if ext in (".py", ".pyi"):
        if b.file_exists("pyproject.toml") or b.file_exists("ruff.toml") or b.file_exists(".ruff.toml"):
            return f"ruff check --output-format=concise {path}"
        if b.file_exists(".flake8") or b.file_exists("setup.cfg"):
            return f"flake8 {path}"
        return f"python -m py_compile {path}"
    if ext in (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs"):
        return f"npx eslint {path}"
    if ext == ".go":
        return f"go vet {path}"
    if ext == ".rb":
        return f"ruby -c {path}"
    if ext in (".sh", ".bash"):
        return f"bash -n {path}"
    return None


LINTABLE_EXTENSIONS = frozenset({
    ".py", ".pyi", ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".go", ".rb", ".sh", ".bash",
})
