"""Tool schema definitions (function-calling format) and dispatch maps."""

from typing import Any, Callable, Dict, Iterable, List, Optional

from tools.file_ops import view_file, create_file, str_replace_editor, replace_lines
from tools.search_ops import search_files
from tools.external_ops import run_command


MODE_EXIT_TOOL = "exit_plan_mode"


def _function(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    _function(
        "view_file",
        "View a file's contents (optionally a line range) or list a directory.",
        {
            "path": {"type": "string", "description": "File or directory path"},
            "start_line": {"type": "integer", "description": "First line to show (1-based)"},
            "end_line": {"type": "integer", "description": "Last line to show (inclusive)"},
        },
        ["path"],
    ),
    _function(
        "create_file",
        "Create a new file or overwrite an existing one with the given content.",
        {
            "path": {"type": "string", "description": "File path"},
            "content": {"type": "string", "description": "Full file content"},
        },
        ["path", "content"],
    ),
    _function(
        "str_replace_editor",
        "Replace an exact string in a file. old_str must match exactly one location unless replace_all is set.",
        {
            "path": {"type": "string", "description": "File path"},
            "old_str": {"type": "string", "description": "Exact text to replace"},
            "new_str": {"type": "string", "description": "Replacement text"},
            "replace_all": {"type": "boolean", "description": "Replace every occurrence"},
        },
        ["path", "old_str", "new_str"],
    ),
    _function(
        "replace_lines",
        "Replace an inclusive 1-based line range in a file.",
        {
            "path": {"type": "string", "description": "File path"},
            "start_line": {"type": "integer", "description": "First line to replace"},
            "end_line": {"type": "integer", "description": "Last line to replace"},
            "new_content": {"type": "string", "description": "Replacement text"},
        },
        ["path", "start_line", "end_line", "new_content"],
    ),
    _function(
        "search",
        "Find project files by keywords in their path and/or content.",
        {
            "query": {"type": "string", "description": "Space separated keywords"},
            "search_type": {"type": "string", "enum": ["text", "files", "both"]},
            "include_pattern": {"type": "string", "description": "Glob of files to include"},
            "exclude_pattern": {"type": "string", "description": "Comma separated globs to exclude"},
            "max_results": {"type": "integer", "description": "Maximum files to return"},
        },
        ["query"],
    ),
    _function(
        "bash",
        "Run a shell command in the working directory.",
        {
            "command": {"type": "string", "description": "Command to run"},
            "timeout": {"type": "integer", "description": "Timeout in seconds (default 30)"},
        },
        ["command"],
    ),
    _function(
        MODE_EXIT_TOOL,
        "Leave planning mode so that file modifications are allowed again.",
        {},
        [],
    ),
]

# Tools that modify the workspace; rejected while planning
WRITE_TOOLS = frozenset({
    "create_file", "str_replace_editor", "replace_lines", "edit_file", "multi_edit",
    "bash", "create_todo_list", "update_todo_list",
})

# Operation tags carried on ToolResult
TOOL_OPERATIONS: Dict[str, str] = {
    "view_file": "view",
    "create_file": "create",
    "str_replace_editor": "str_replace",
    "replace_lines": "replace_lines",
    "search_files": "search",
    "search": "search",
    "bash": "bash",
}

READ_ONLY_OPERATIONS = frozenset({"view", "search"})

TOOL_IMPLEMENTATIONS: Dict[str, Callable[..., Any]] = {
    "view_file": view_file,
    "create_file": create_file,
    "str_replace_editor": str_replace_editor,
    "replace_lines": replace_lines,
    "search": search_files,
    "bash": run_command,
}


def tool_name(definition: Dict[str, Any]) -> str:
    return definition.get("function", {}).get("name", "")


def tool_definitions(allowed: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
    """Tool definitions, optionally restricted to a whitelist."""
    if allowed is None:
        return list(TOOL_DEFINITIONS)
    allowed_set = set(allowed)
    return [d for d in TOOL_DEFINITIONS if tool_name(d) in allowed_set]
