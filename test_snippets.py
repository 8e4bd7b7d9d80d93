"""Tests for declaration snippets."""

import pytest

from context.snippets import SnippetBuilder, extract_declarations, is_declaration

LOADER = '''"""Loader for plugin modules."""

import os
from typing import List

DEFAULT_PATH = "plugins"


def discover(path: str = DEFAULT_PATH) -> List[str]:
    """Names of the plugin modules under ``path``."""
    found = []
    for name in os.listdir(path):
        if name.endswith(".py"):
            found.append(name[:-3])
    return found


class PluginLoader:
    def __init__(self, path):
        self.path = path
        self.loaded = {}

    @property
    def count(self):
        return len(self.loaded)

    async def load(self, name):
        module = __import__(name)
        self.loaded[name] = module
        return module


if __name__ == "__main__":
    print(discover())
'''

HELPERS_TS = """/**
 * Test helpers.
 */
import { Something } from './other';

export interface Options {
  name: string;
}

export function run(opts: Options): string {
  return opts.name.toUpperCase();
}

const LIMIT = 3;
if (LIMIT > 2) {
  console.log('x');
}
"""


@pytest.fixture
def builder(backend):
    return SnippetBuilder(backend)


def _numbers(declarations):
    return [n for n, _ in declarations]


def test_declarations_keep_definitions_and_drop_bodies(builder):
    snippet = builder.build_from_content("plugins/loader.py", LOADER)

    assert snippet.snippet.startswith("# plugins/loader.py\n# (9 declarations)\n\n\"\"\"Loader")
    assert "class PluginLoader:" in snippet.snippet
    assert "    @property" in snippet.snippet
    assert "    async def load(self, name):" in snippet.snippet
    assert "found.append" not in snippet.snippet
    assert "import os" not in snippet.snippet
    assert "__main__" not in snippet.snippet
    assert snippet.line_range == (1, 27)
    assert snippet.total_lines == 35
    assert snippet.total_declarations == snippet.included_declarations == 9
    assert snippet.omitted_declarations == 0


def test_imports_and_comments_are_optional():
    assert _numbers(extract_declarations(LOADER)) == [1, 6, 9, 10, 18, 19, 23, 24, 27]
    assert _numbers(extract_declarations(LOADER, include_imports=True)) == [1, 3, 4, 6, 9, 10, 18, 19, 23, 24, 27]
    assert _numbers(extract_declarations(LOADER, include_comments=False)) == [6, 9, 18, 19, 23, 24, 27]


@pytest.mark.parametrize("line, expected", [
    ("MAX_RETRIES = 3", True),
    ("timeout: float = 2.5", True),
    ("    retries = 3", False),
    ("if value == 3:", False),
    ("export default class App {", True),
    ("  const local = 1;", True),
    ("import os", False),
    ("", False),
])
def test_is_declaration(line, expected):
    assert is_declaration(line) is expected


def test_long_declaration_lists_keep_header_and_footer(builder):
    snippet = builder.build_from_content("plugins/loader.py", LOADER, max_lines=4)

    assert "# (4 declarations shown, 5 omitted)" in snippet.snippet
    assert "# ... (5 more declarations omitted)" in snippet.snippet
    assert "DEFAULT_PATH" in snippet.snippet
    assert "async def load" in snippet.snippet
    assert "class PluginLoader" not in snippet.snippet
    assert snippet.included_declarations == 4
    assert snippet.omitted_declarations == 5
    assert snippet.line_range == (1, 27)


def test_snippets_are_much_smaller_than_the_file(builder):
    body = "\n".join(f"    total += compute_step({i}, value)" for i in range(8))
    content = "\n\n".join(f"def step_{n}(value):\n    total = 0\n{body}\n    return total" for n in range(10))

    snippet = builder.build_from_content("steps.py", content)

    assert snippet.total_declarations == 10
    assert 0 < snippet.compression_ratio < 0.4
    assert snippet.tokens < builder.count_tokens(content)


def test_doc_comments_and_declarations_in_typescript(builder):
    snippet = builder.build_from_content("src/helpers.ts", HELPERS_TS)

    assert snippet.snippet.splitlines() == [
        "// src/helpers.ts",
        "// (6 declarations)",
        "",
        "/**",
        " * Test helpers.",
        " */",
        "export interface Options {",
        "export function run(opts: Options): string {",
        "const LIMIT = 3;",
    ]


def test_build_reads_through_the_backend(builder):
    snippet = builder.build("hello.py")
    assert snippet.snippet == "# hello.py\n# (1 declarations)\n\ndef hello():"
    assert snippet.line_range == (1, 1)

    missing = builder.build("missing.py")
    assert missing.snippet.startswith("# missing.py\n# (unable to read file:")
    assert missing.tokens == 0
    assert missing.line_range is None
    assert [s.path for s in builder.build_many(["hello.py", "missing.py"])] == ["hello.py", "missing.py"]
