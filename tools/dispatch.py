"""Tool execution dispatch."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from backend import Backend, LocalBackend
from tools._common import ToolResult
from tools.schemas import TOOL_IMPLEMENTATIONS, TOOL_OPERATIONS, MODE_EXIT_TOOL

logger = logging.getLogger(__name__)


def parse_arguments(arguments: Any) -> Dict[str, Any]:
    """Decode a tool call's serialized argument string. Raises ValueError on bad JSON."""
    if isinstance(arguments, dict):
        return arguments
    if not (arguments or "").strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid tool arguments: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError("Tool arguments must be a JSON object")
    return parsed


def execute_tool(
    tool_name: str,
    inputs: Dict[str, Any],
    working_directory: str = ".",
    backend: Optional[Backend] = None,
) -> ToolResult:
    """Execute a tool by name with the given inputs."""
    impl = TOOL_IMPLEMENTATIONS.get(tool_name)
    if impl is None:
        return ToolResult(success=False, output="", error=f"Unknown tool: {tool_name}")
    try:
        result = impl(**inputs, backend=backend or LocalBackend(working_directory),
                      working_directory=working_directory)
    except TypeError as e:
        result = ToolResult(success=False, output="", error=f"Invalid arguments for {tool_name}: {e}")
    if result.operation is None:
        result.operation = TOOL_OPERATIONS.get(tool_name)
    return result


class ToolExecutor(ABC):
    """Executes one model-requested tool call.

    Implementations must return a ToolResult and never raise for tool-level failures.
    """

    @abstractmethod
    async def execute(self, tool_call: Any) -> ToolResult:
        """Run the call and report its outcome."""


class LocalToolExecutor(ToolExecutor):
    """Runs the built-in tools against a Backend in a worker thread."""

    def __init__(self, backend: Backend, mode_state: Optional[Any] = None):
        self.backend = backend
        self.mode_state = mode_state

    async def execute(self, tool_call: Any) -> ToolResult:
        try:
            inputs = parse_arguments(tool_call.arguments)
        except ValueError as e:
            return ToolResult(success=False, output="", error=f"Tool execution error: {e}")

        if tool_call.name == MODE_EXIT_TOOL:
            if self.mode_state is None:
                return ToolResult(success=False, output="", error="Operation mode is not managed here")
            plan_file = self.mode_state.exit_plan_mode()
            note = f" Plan file: {plan_file}" if plan_file else ""
            return ToolResult(success=True, output=f"Exited planning mode.{note}")

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None,
                lambda: execute_tool(tool_call.name, inputs, self.backend.working_directory, self.backend),
            )
        except Exception as e:
            logger.error(f"Tool {tool_call.name} crashed: {e}")
            return ToolResult(success=False, output="", error=f"Tool execution error: {e}")

    def cancel(self) -> None:
        self.backend.cancel_running_command()
