"""
Structural snippets: the declarations of a source file without their bodies.

When a whole file will not fit the remaining context budget the gather phase
sends a snippet instead: definitions, classes, types, exports and top-level
assignments, with their docstrings or doc comments. No model calls are made.
Long declaration lists keep a header and a footer and note what was omitted.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from backend import Backend
from context.budget import estimate_tokens
from context.types import LineRange

logger = logging.getLogger(__name__)

SNIPPET_MAX_LINES = 30

_PY_DEFINITION = re.compile(r"^(?:async\s+def|def|class)\s+\w")
_DECORATOR = re.compile(r"^@[\w.]+")
_TOP_LEVEL_ASSIGNMENT = re.compile(r"^[A-Za-z_]\w*\s*(?::[^=]+)?=(?!=)")
_EXPORT = re.compile(r"^(?:export\s|module\.exports|exports\.)")
_JS_DECLARATION = re.compile(
    r"^(?:export\s+(?:default\s+)?)?(?:async\s+)?(?:abstract\s+)?"
    r"(?:function\*?|class|interface|type|enum|const|let|var)\s+"
)
_IMPORT = re.compile(r"^(?:import\s|from\s+\S+\s+import\s)|require\(['\"]")
_DOC_QUOTES = ('"""', "'''")

_HASH_COMMENT_EXTENSIONS = {".py", ".pyi", ".sh", ".rb", ".yaml", ".yml", ".toml", ".r", ".pl"}

Numbered = Tuple[int, str]


@dataclass
class CodeSnippet:
    """A compressed view of one file plus what it left out."""
    path: str
    snippet: str
    line_range: Optional[LineRange] = None
    total_lines: int = 0
    total_declarations: int = 0
    included_declarations: int = 0
    omitted_declarations: int = 0
    tokens: int = 0
    compression_ratio: float = 0.0


def comment_prefix(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    return "#" if ext in _HASH_COMMENT_EXTENSIONS else "//"


def is_declaration(line: str, include_imports: bool = False) -> bool:
    """Whether a raw source line is worth keeping in a snippet."""
    trimmed = line.strip()
    if not trimmed:
        return False
    if include_imports and _IMPORT.search(trimmed):
        return True
    if _EXPORT.match(trimmed) or _JS_DECLARATION.match(trimmed):
        return True
    if _PY_DEFINITION.match(trimmed) or _DECORATOR.match(trimmed):
        return True
    # Only module-level assignments; indented ones are implementation
    return bool(_TOP_LEVEL_ASSIGNMENT.match(line))


def _doc_block(lines: List[str], start: int) -> List[Numbered]:
    """The doc comment or docstring opening at ``start``, through its closing line."""
    first = lines[start].strip()
    if first.startswith("/**"):
        closer = "*/"
        if first.endswith(closer) and len(first) > 4:
            return [(start + 1, lines[start])]
    else:
        closer = first[:3]
        if first.count(closer) >= 2:
            return [(start + 1, lines[start])]

    block = [(start + 1, lines[start])]
    for i in range(start + 1, len(lines)):
        block.append((i + 1, lines[i]))
        if closer in lines[i]:
            break
    return block


def extract_declarations(content: str, include_imports: bool = False,
                         include_comments: bool = True) -> List[Numbered]:
    """Return (line number, line) pairs for the declarations in ``content``."""
    lines = content.split("\n")
    found: List[Numbered] = []
    i = 0
    while i < len(lines):
        trimmed = lines[i].strip()
        if include_comments and (trimmed.startswith("/**") or trimmed.startswith(_DOC_QUOTES)):
            block = _doc_block(lines, i)
            found.extend(block)
            i += len(block)
            continue
        if is_declaration(lines[i], include_imports):
            found.append((i + 1, lines[i]))
        i += 1
    return found


def render_snippet(path: str, header: List[str], omitted: int = 0, footer: Optional[List[str]] = None) -> str:
    footer = footer or []
    mark = comment_prefix(path)
    parts = [f"{mark} {path}"]
    if omitted > 0:
        parts.append(f"{mark} ({len(header) + len(footer)} declarations shown, {omitted} omitted)")
    else:
        parts.append(f"{mark} ({len(header)} declarations)")
    parts.append("")
    parts.extend(header)
    if omitted > 0:
        parts.extend(["", f"{mark} ... ({omitted} more declarations omitted)", ""])
    parts.extend(footer)
    return "\n".join(parts).strip()


class SnippetBuilder:
    """Builds declaration snippets for files reached through a backend."""

    def __init__(self, backend: Backend, token_counter: Callable[[str], int] = estimate_tokens):
        self.backend = backend
        self.count_tokens = token_counter

    def build(self, path: str, max_lines: int = SNIPPET_MAX_LINES, include_imports: bool = False,
              include_comments: bool = True) -> CodeSnippet:
        """Snippet for a file on disk. Unreadable files give an explanatory snippet."""
        try:
            content = self.backend.read_file(self.backend.resolve_path(path))
        except (OSError, ValueError) as e:
            logger.debug(f"Cannot build snippet for {path}: {e}")
            mark = comment_prefix(path)
            return CodeSnippet(path=path, snippet=f"{mark} {path}\n{mark} (unable to read file: {e})")
        return self.build_from_content(path, content, max_lines, include_imports, include_comments)

    def build_many(self, paths: List[str], **options) -> List[CodeSnippet]:
        return [self.build(p, **options) for p in paths]

    def build_from_content(self, path: str, content: str, max_lines: int = SNIPPET_MAX_LINES,
                           include_imports: bool = False, include_comments: bool = True) -> CodeSnippet:
        declarations = extract_declarations(content, include_imports, include_comments)

        if len(declarations) <= max_lines:
            shown = declarations
            text = render_snippet(path, [line for _, line in declarations])
        else:
            head_count = max_lines // 2
            tail_count = max_lines - head_count
            head = declarations[:head_count]
            tail = declarations[-tail_count:] if tail_count else []
            shown = head + tail
            text = render_snippet(path, [line for _, line in head],
                                  omitted=len(declarations) - len(shown),
                                  footer=[line for _, line in tail])

        full_tokens = self.count_tokens(content)
        tokens = self.count_tokens(text)
        return CodeSnippet(
            path=path,
            snippet=text,
            line_range=(shown[0][0], shown[-1][0]) if shown else None,
            total_lines=len(content.split("\n")),
            total_declarations=len(declarations),
            included_declarations=len(shown),
            omitted_declarations=len(declarations) - len(shown),
            tokens=tokens,
            compression_ratio=tokens / full_tokens if full_tokens else 0.0,
        )
