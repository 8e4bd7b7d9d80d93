"""Tests for operation mode, tool hooks and cancellation tokens."""

import pytest

from agent.cancellation import CancellationToken
from agent.hooks import CommandHookRunner, HookConfig
from agent.messages import ToolCall
from agent.mode import OperationMode, OperationModeState, blocked_in_planning_message
from conftest import StubBackend
from tools._common import ToolResult


# ── operation mode ──────────────────────────────────────────

def test_cycle_order():
    state = OperationModeState()
    assert [state.cycle() for _ in range(3)] == [
        OperationMode.AUTO_APPROVE, OperationMode.PLANNING, OperationMode.NORMAL,
    ]


def test_listeners_see_changes_until_unsubscribed():
    state = OperationModeState()
    seen = []
    unsubscribe = state.on_change(lambda new, old: seen.append((old.value, new.value)))

    state.set_mode(OperationMode.PLANNING)
    state.set_mode(OperationMode.PLANNING)
    unsubscribe()
    state.set_mode(OperationMode.NORMAL)

    assert seen == [("normal", "planning")]


def test_set_mode_accepts_plain_values():
    state = OperationModeState()
    state.set_mode("auto-approve")
    assert state.mode is OperationMode.AUTO_APPROVE
    with pytest.raises(ValueError):
        state.set_mode("yolo")


@pytest.mark.parametrize("mode, tool, allowed, approval", [
    (OperationMode.NORMAL, "create_file", True, True),
    (OperationMode.NORMAL, "view_file", True, False),
    (OperationMode.AUTO_APPROVE, "bash", True, False),
    (OperationMode.PLANNING, "str_replace_editor", False, False),
    (OperationMode.PLANNING, "search", True, False),
    (OperationMode.PLANNING, "exit_plan_mode", True, False),
])
def test_write_gate(mode, tool, allowed, approval):
    state = OperationModeState(mode)
    assert state.is_write_allowed(tool) is allowed
    assert state.requires_approval(tool) is approval


def test_plan_mode_round_trip_and_reset():
    state = OperationModeState()
    state.enter_plan_mode("docs/plan.md")
    assert state.mode == OperationMode.PLANNING
    assert state.plan_file == "docs/plan.md"
    assert state.exit_plan_mode() == "docs/plan.md"
    assert state.plan_file is None

    state.enter_plan_mode("again.md")
    state.reset()
    assert state.mode == OperationMode.NORMAL
    assert state.plan_file is None


def test_blocked_message_names_the_tool():
    assert blocked_in_planning_message("bash") == (
        'Tool "bash" is blocked in planning mode. Use exit_plan_mode first to enable file modifications.'
    )


# ── hooks ───────────────────────────────────────────────────

def _call(name="create_file", arguments='{"path": "it\'s here.py", "content": ""}'):
    return ToolCall(id="call_1", name=name, arguments=arguments)


@pytest.mark.asyncio
async def test_pre_hook_quotes_placeholders(workspace):
    backend = StubBackend(str(workspace))
    runner = CommandHookRunner([HookConfig(event="pre_tool", command="check {tool} {file}")], backend)

    decision = await runner.before_tool(_call())

    assert not decision.blocked
    assert backend.commands == ["check create_file 'it'\"'\"'s here.py'"]


@pytest.mark.asyncio
async def test_failing_block_hook_blocks(workspace):
    backend = StubBackend(str(workspace), [("guard", ("", "protected path", 2))])
    hooks = [
        HookConfig(event="pre_tool", command="guard {file}", tools=["create_file"], failure_mode="block"),
        HookConfig(event="pre_tool", command="never-runs"),
    ]
    decision = await CommandHookRunner(hooks, backend).before_tool(_call(arguments='{"path": "a.py"}'))

    assert decision.blocked
    assert decision.reason == "hook 'guard a.py' exited with 2: protected path"
    assert backend.commands == ["guard a.py"]


@pytest.mark.asyncio
async def test_failing_continue_hook_does_not_block(workspace):
    backend = StubBackend(str(workspace), [("guard", ("", "", 1))])
    hooks = [HookConfig(event="pre_tool", command="guard"), HookConfig(event="pre_tool", command="second")]
    decision = await CommandHookRunner(hooks, backend).before_tool(_call())
    assert not decision.blocked
    assert backend.commands == ["guard", "second"]


@pytest.mark.asyncio
async def test_hooks_filter_by_tool_and_event(workspace):
    backend = StubBackend(str(workspace))
    hooks = [
        HookConfig(event="pre_tool", command="only-bash", tools=["bash"]),
        HookConfig(event="post_tool", command="fmt {file}", tools=["create_file"]),
    ]
    runner = CommandHookRunner(hooks, backend)
    call = _call(arguments='{"path": "a.py"}')

    await runner.before_tool(call)
    assert backend.commands == []

    await runner.after_tool(call, ToolResult(success=True, output="ok"))
    assert backend.commands == ["fmt a.py"]


@pytest.mark.asyncio
async def test_hook_with_unparseable_arguments_renders_empty_file(workspace):
    backend = StubBackend(str(workspace))
    runner = CommandHookRunner([HookConfig(event="pre_tool", command="log {tool} {file}")], backend)
    await runner.before_tool(_call(name="bash", arguments="{broken"))
    assert backend.commands == ["log bash ''"]


# ── cancellation ────────────────────────────────────────────

def test_cancellation_runs_callbacks_once():
    token = CancellationToken()
    calls = []
    token.on_cancel(lambda: calls.append("first"))
    token.cancel()
    token.cancel()
    assert token.cancelled
    assert calls == ["first"]

    token.on_cancel(lambda: calls.append("late"))
    assert calls == ["first", "late"]
