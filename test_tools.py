"""Tests for the built-in tools and the local tool executor."""

import pytest

from agent.messages import ToolCall
from agent.mode import OperationMode, OperationModeState
from tools import (
    LocalToolExecutor,
    WRITE_TOOLS,
    create_file,
    execute_tool,
    lint_command,
    parse_arguments,
    replace_lines,
    run_command,
    search_files,
    str_replace_editor,
    tool_definitions,
    tool_name,
    view_file,
)
from tools.dispatch import ToolExecutor


# ── file tools ──────────────────────────────────────────────

def test_view_file_numbers_lines(backend):
    result = view_file("notes.txt", backend=backend)
    assert result.success
    assert result.operation == "view"
    assert result.output.splitlines() == ["[3 lines total]", "     1|alpha", "     2|beta", "     3|gamma"]


def test_view_file_line_range(backend):
    result = view_file("notes.txt", start_line=2, end_line=2, backend=backend)
    assert result.output.splitlines() == ["[3 lines total] (showing lines 2-2)", "     2|beta"]


def test_view_file_lists_directories(backend):
    result = view_file("src", backend=backend)
    assert result.success
    assert result.output == "Directory src:\n  cache_utils.py"


def test_view_file_missing(backend):
    result = view_file("nope.py", backend=backend)
    assert not result.success
    assert result.error == "File not found: nope.py"


def test_paths_outside_the_working_directory_are_refused(backend):
    result = view_file("../outside.txt", backend=backend)
    assert not result.success
    assert "escapes working directory" in result.error


def test_create_file_then_overwrite_shows_diff(workspace, backend):
    created = create_file("pkg/new.py", "a = 1\n", backend=backend)
    assert created.success
    assert created.output == "Created 1 lines to pkg/new.py"
    assert created.operation == "create"

    rewritten = create_file("pkg/new.py", "a = 2\n", backend=backend)
    assert rewritten.output.startswith("Wrote 1 lines to pkg/new.py\n")
    assert "-a = 1" in rewritten.output
    assert "+a = 2" in rewritten.output
    assert (workspace / "pkg" / "new.py").read_text() == "a = 2\n"


def test_str_replace_requires_a_unique_match(workspace, backend):
    (workspace / "dup.py").write_text("x = 1\nx = 1\n")
    result = str_replace_editor("dup.py", "x = 1", "x = 2", backend=backend)
    assert not result.success
    assert result.error.startswith("Found 2 occurrences of old_str in dup.py")

    result = str_replace_editor("dup.py", "x = 1", "x = 2", replace_all=True, backend=backend)
    assert result.success
    assert "(2 replacements)" in result.output
    assert (workspace / "dup.py").read_text() == "x = 2\nx = 2\n"


def test_str_replace_missing_text(backend):
    result = str_replace_editor("hello.py", "goodbye", "x", backend=backend)
    assert not result.success
    assert "old_str not found in hello.py" in result.error
    assert result.operation == "str_replace"


def test_replace_lines(workspace, backend):
    result = replace_lines("notes.txt", 2, 3, "BETA\nGAMMA", backend=backend)
    assert result.success
    assert (workspace / "notes.txt").read_text() == "alpha\nBETA\nGAMMA\n"


@pytest.mark.parametrize("start, end", [(0, 1), (3, 2), (99, 100)])
def test_replace_lines_rejects_bad_ranges(backend, start, end):
    result = replace_lines("notes.txt", start, end, "x", backend=backend)
    assert not result.success
    assert result.error.startswith(f"Invalid line range {start}-{end}")


# ── search and shell ────────────────────────────────────────

def test_search_ranks_by_matches(workspace, backend):
    result = search_files("cache", backend=backend)
    assert result.success
    lines = result.output.splitlines()
    assert lines[0] == 'Search results for "cache":'
    assert lines[1] == "Found: 1 files"
    assert lines[2] == "src/cache_utils.py (4 matches)"


def test_search_respects_gitignore(workspace, backend):
    (workspace / ".gitignore").write_text("build_out/\n")
    (workspace / "build_out").mkdir()
    (workspace / "build_out" / "zebra.txt").write_text("zebra\n")
    (workspace / "zebra.md").write_text("zebra\n")
    result = search_files("zebra", backend=backend)
    assert "zebra.md" in result.output
    assert "build_out" not in result.output


def test_search_without_hits_and_without_query(backend):
    assert search_files("xylophone", backend=backend).output == "No matches found for: xylophone"
    assert search_files("   ", backend=backend).error == "query is required"


def test_run_command_reports_exit_code(backend):
    ok = run_command("echo hi", backend=backend)
    assert ok.success
    assert ok.output.strip() == "hi"

    failed = run_command("echo oops >&2; exit 3", backend=backend)
    assert not failed.success
    assert failed.error == "Command exited with code 3"
    assert failed.output.startswith("[exit code: 3]")
    assert "[stderr]\noops" in failed.output


@pytest.mark.parametrize("marker, expected", [
    (None, "python -m py_compile src/a.py"),
    ("pyproject.toml", "ruff check --output-format=concise src/a.py"),
    ("setup.cfg", "flake8 src/a.py"),
])
def test_lint_command_follows_project_markers(workspace, backend, marker, expected):
    if marker:
        (workspace / marker).write_text("")
    assert lint_command("src/a.py", backend) == expected


def test_lint_command_other_languages(backend):
    assert lint_command("app.tsx", backend) == "npx eslint app.tsx"
    assert lint_command("main.go", backend) == "go vet main.go"
    assert lint_command("my file.sh", backend) == "bash -n 'my file.sh'"
    assert lint_command("README.md", backend) is None


# ── schemas and dispatch ────────────────────────────────────

def test_tool_definitions_whitelist():
    names = [tool_name(d) for d in tool_definitions()]
    assert {"view_file", "create_file", "str_replace_editor", "replace_lines", "search", "bash",
            "exit_plan_mode"} == set(names)
    assert [tool_name(d) for d in tool_definitions(["bash", "view_file", "missing"])] == ["view_file", "bash"]
    assert tool_definitions([]) == []


def test_write_tools_cover_every_mutating_builtin():
    assert {"create_file", "str_replace_editor", "replace_lines", "bash"} <= WRITE_TOOLS
    assert "view_file" not in WRITE_TOOLS


@pytest.mark.parametrize("arguments, expected", [
    ('{"path": "a.py"}', {"path": "a.py"}),
    ("", {}),
    ({"path": "b.py"}, {"path": "b.py"}),
])
def test_parse_arguments(arguments, expected):
    assert parse_arguments(arguments) == expected


@pytest.mark.parametrize("arguments", ["{oops", "[1, 2]"])
def test_parse_arguments_rejects_non_objects(arguments):
    with pytest.raises(ValueError):
        parse_arguments(arguments)


def test_execute_tool_unknown_and_bad_arguments(workspace):
    assert execute_tool("teleport", {}, str(workspace)).error == "Unknown tool: teleport"
    result = execute_tool("view_file", {"file": "hello.py"}, str(workspace))
    assert not result.success
    assert result.error.startswith("Invalid arguments for view_file")
    assert result.operation == "view"


@pytest.mark.asyncio
async def test_executor_runs_tools_in_a_worker(backend):
    executor = LocalToolExecutor(backend)
    result = await executor.execute(ToolCall(id="c1", name="view_file", arguments='{"path": "hello.py"}'))
    assert result.success
    assert "return 'hi'" in result.output


@pytest.mark.asyncio
async def test_executor_reports_malformed_json(backend):
    executor = LocalToolExecutor(backend)
    result = await executor.execute(ToolCall(id="c1", name="view_file", arguments="{path"))
    assert not result.success
    assert result.error.startswith("Tool execution error: Invalid tool arguments")


@pytest.mark.asyncio
async def test_executor_exit_plan_mode(backend):
    mode_state = OperationModeState()
    mode_state.enter_plan_mode()
    result = await LocalToolExecutor(backend, mode_state).execute(ToolCall(id="c1", name="exit_plan_mode"))
    assert result.output == "Exited planning mode."
    assert mode_state.mode == OperationMode.NORMAL

    orphan = await LocalToolExecutor(backend).execute(ToolCall(id="c2", name="exit_plan_mode"))
    assert not orphan.success


def test_tool_executor_requires_execute():
    with pytest.raises(TypeError):
        ToolExecutor()

    class Incomplete(ToolExecutor):
        pass

    with pytest.raises(TypeError):
        Incomplete()
