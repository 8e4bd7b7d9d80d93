"""
Hooks run around tool execution.

A pre-tool hook may block the call; the engine then records a failed
ToolResult for that step and does not retry it.
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from agent.events import PolicyDecision
from backend import Backend
from config import app_config
from tools._common import ToolResult
from tools.dispatch import parse_arguments

logger = logging.getLogger(__name__)


class HookRunner:
    """No-op hooks. Subclass to add behaviour."""

    async def before_tool(self, tool_call: Any) -> PolicyDecision:
        return PolicyDecision()

    async def after_tool(self, tool_call: Any, result: ToolResult) -> None:
        return None


@dataclass
class HookConfig:
    event: str  # pre_tool | post_tool
    command: str  # may use {tool} and {file}
    tools: List[str] = field(default_factory=list)  # empty matches every tool
    failure_mode: str = "continue"  # continue | block
    timeout: float = field(default_factory=lambda: app_config.hook_timeout)

    def matches(self, tool_name: str) -> bool:
        return not self.tools or tool_name in self.tools


def _file_argument(arguments: Dict[str, Any]) -> str:
    for key in ("path", "file_path", "filePath", "target_file"):
        value = arguments.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


class CommandHookRunner(HookRunner):
    """Runs shell commands configured per hook event through a Backend."""

    def __init__(self, hooks: List[HookConfig], backend: Backend):
        self.hooks = hooks
        self.backend = backend

    def _render(self, hook: HookConfig, tool_call: Any) -> str:
        try:
            arguments = parse_arguments(tool_call.arguments)
        except ValueError:
            arguments = {}
        return hook.command.format(
            tool=shlex.quote(tool_call.name),
            file=shlex.quote(_file_argument(arguments)),
        )

    async def _run(self, hook: HookConfig, tool_call: Any) -> Optional[str]:
        """Run one hook. Returns an error description on failure, None on success."""
        command = self._render(hook, tool_call)
        loop = asyncio.get_running_loop()
        try:
            stdout, stderr, rc = await loop.run_in_executor(
                None, lambda: self.backend.run_command(command, cwd=".", timeout=hook.timeout)
            )
        except Exception as e:
            return f"hook '{command}' failed to run: {e}"
        if rc != 0:
            detail = (stderr or stdout).strip()
            return f"hook '{command}' exited with {rc}" + (f": {detail}" if detail else "")
        return None

    async def before_tool(self, tool_call: Any) -> PolicyDecision:
        for hook in self.hooks:
            if hook.event != "pre_tool" or not hook.matches(tool_call.name):
                continue
            error = await self._run(hook, tool_call)
            if error is None:
                continue
            if hook.failure_mode == "block":
                logger.warning(f"Pre-tool {error}; blocking {tool_call.name}")
                return PolicyDecision(blocked=True, reason=error)
            logger.warning(f"Pre-tool {error}; continuing")
        return PolicyDecision()

    async def after_tool(self, tool_call: Any, result: ToolResult) -> None:
        for hook in self.hooks:
            if hook.event != "post_tool" or not hook.matches(tool_call.name):
                continue
            error = await self._run(hook, tool_call)
            if error is not None:
                logger.warning(f"Post-tool {error}")
