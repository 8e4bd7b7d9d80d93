"""
System prompt composition.
Prompt fragments are assembled per engine (top-level or sub-agent) and project language.
"""

import os
from typing import Iterable, Optional


_MOD_IDENTITY = """You are an expert software engineer working directly in the user's codebase. You can read and edit files, search the project, and run shell commands.

You investigate before acting, you verify after changing, and you never guess when you can check."""

_MOD_DOING_TASKS = """<doing_tasks>
- NEVER propose changes to code you haven't read. Read files first, then modify.
- Only make changes that are directly requested or clearly necessary.
- After an edit, the file is linted automatically. If you receive a verification failure message, fix the reported issues before moving on.
- When a tool reports an error, read it and adjust; do not repeat the identical call.
</doing_tasks>"""

_MOD_TOOL_POLICY = """<tool_policy>
- Read files: view_file (use start_line/end_line for large files)
- Edit files: str_replace_editor for targeted edits, replace_lines for line ranges
- Create files: create_file
- Find code: search
- Reserve bash for tests, builds, git and package managers.
- Tool calls in one response run in the order you list them.
</tool_policy>"""

_MOD_PLANNING = """<planning_mode>
Planning mode is active: file modifications and shell commands are rejected.
Investigate and write your plan as a reply. Call exit_plan_mode only when the user asks you to start implementing.
</planning_mode>"""

_MOD_SUBAGENT = """<subagent>
You are a subagent working on a slice of a larger task with an isolated context.
Work only on the files you were given, with only the tools you were given.
You cannot spawn other subagents. Finish with a short summary that lists every file you modified.
</subagent>"""

_MOD_LANG_PYTHON = """<language_conventions lang="python">
Follow PEP 8 and the project's existing style. Prefer the project's configured linter (ruff or flake8).
</language_conventions>"""

_MOD_LANG_JAVASCRIPT = """<language_conventions lang="javascript/typescript">
Follow the project's eslint/prettier configuration. Keep module style (ESM vs CommonJS) consistent.
</language_conventions>"""

LANG_MODULES = {
    "python": _MOD_LANG_PYTHON,
    "javascript": _MOD_LANG_JAVASCRIPT,
    "typescript": _MOD_LANG_JAVASCRIPT,
}


def _detect_project_language(working_directory: str) -> Optional[str]:
    """Detect the primary language of a project from manifest files."""
    checks = [
        ("pyproject.toml", "python"),
        ("requirements.txt", "python"),
        ("setup.py", "python"),
        ("tsconfig.json", "typescript"),
        ("package.json", "javascript"),
    ]
    for filename, lang in checks:
        if os.path.exists(os.path.join(working_directory, filename)):
            return lang
    return None


def compose_system_prompt(
    working_directory: str,
    tool_names: Iterable[str],
    subagent: bool = False,
    planning: bool = False,
) -> str:
    """Assemble the system prompt for an engine."""
    parts = [_MOD_IDENTITY, _MOD_DOING_TASKS, _MOD_TOOL_POLICY]
    if planning:
        parts.append(_MOD_PLANNING)
    if subagent:
        parts.append(_MOD_SUBAGENT)

    language = _detect_project_language(working_directory)
    if language in LANG_MODULES:
        parts.append(LANG_MODULES[language])

    parts.append(f"<working_directory>{working_directory}</working_directory>")
    parts.append(f"<tools_available>{', '.join(tool_names)}</tools_available>")
    return "\n\n".join(parts)
