"""
Operation mode: global write-permission state read before every write-class tool call.
"""

import logging
from enum import Enum
from typing import Callable, List, Optional

from tools.schemas import WRITE_TOOLS, MODE_EXIT_TOOL

logger = logging.getLogger(__name__)


class OperationMode(str, Enum):
    NORMAL = "normal"
    AUTO_APPROVE = "auto-approve"
    PLANNING = "planning"


_CYCLE = [OperationMode.NORMAL, OperationMode.AUTO_APPROVE, OperationMode.PLANNING]

ModeListener = Callable[[OperationMode, OperationMode], None]


class OperationModeState:
    """Holds the current mode. Pass one instance to every engine that should share it."""

    def __init__(self, mode: OperationMode = OperationMode.NORMAL):
        self._mode = mode
        self._plan_file: Optional[str] = None
        self._listeners: List[ModeListener] = []

    @property
    def mode(self) -> OperationMode:
        return self._mode

    @property
    def plan_file(self) -> Optional[str]:
        return self._plan_file

    def set_mode(self, mode: OperationMode) -> None:
        mode = OperationMode(mode)
        previous = self._mode
        if mode == previous:
            return
        self._mode = mode
        logger.info(f"Operation mode: {previous.value} -> {mode.value}")
        for listener in list(self._listeners):
            listener(mode, previous)

    def cycle(self) -> OperationMode:
        self.set_mode(_CYCLE[(_CYCLE.index(self._mode) + 1) % len(_CYCLE)])
        return self._mode

    def enter_plan_mode(self, plan_file: Optional[str] = None) -> None:
        self._plan_file = plan_file
        self.set_mode(OperationMode.PLANNING)

    def exit_plan_mode(self) -> Optional[str]:
        """Leave planning for normal mode. Returns the plan file, if any."""
        plan_file = self._plan_file
        self._plan_file = None
        self.set_mode(OperationMode.NORMAL)
        return plan_file

    def is_write_allowed(self, tool_name: str) -> bool:
        if self._mode != OperationMode.PLANNING:
            return True
        return tool_name == MODE_EXIT_TOOL or tool_name not in WRITE_TOOLS

    def requires_approval(self, tool_name: str) -> bool:
        return self._mode == OperationMode.NORMAL and tool_name in WRITE_TOOLS

    def on_change(self, listener: ModeListener) -> Callable[[], None]:
        """Subscribe to mode changes. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def reset(self) -> None:
        self._plan_file = None
        self.set_mode(OperationMode.NORMAL)


def blocked_in_planning_message(tool_name: str) -> str:
    return (
        f'Tool "{tool_name}" is blocked in planning mode. '
        f"Use {MODE_EXIT_TOOL} first to enable file modifications."
    )
