"""
Tool contract and built-in tool implementations for the engine.
Each tool has a function-calling schema and an implementation function.
Tools use a Backend abstraction for file/command operations.
"""

from tools._common import ToolResult  # noqa: F401
from tools.gitignore import (  # noqa: F401
    _load_gitignore,
    _is_ignored,
    compile_patterns,
    in_skipped_tree,
    invalidate_gitignore_cache,
    _ALWAYS_SKIP_DIRS,
    _ALWAYS_SKIP_EXTENSIONS,
)
from tools.file_ops import (  # noqa: F401
    view_file,
    create_file,
    str_replace_editor,
    replace_lines,
)
from tools.search_ops import (  # noqa: F401
    search_files,
    FileSearch,
    lint_command,
    LINTABLE_EXTENSIONS,
)
from tools.external_ops import run_command  # noqa: F401
from tools.schemas import (  # noqa: F401
    TOOL_DEFINITIONS,
    TOOL_IMPLEMENTATIONS,
    TOOL_OPERATIONS,
    WRITE_TOOLS,
    READ_ONLY_OPERATIONS,
    MODE_EXIT_TOOL,
    tool_definitions,
    tool_name,
)
from tools.dispatch import execute_tool, parse_arguments, ToolExecutor, LocalToolExecutor  # noqa: F401
