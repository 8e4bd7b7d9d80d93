"""
Agent event and policy decision data types.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional


@dataclass
class AgentEvent:
    """Event emitted during a turn"""
    type: str  # gather, content, tool_calls, tool_call, tool_result, verification, cancelled, error, done, etc.
    content: str = ""
    data: Optional[Dict[str, Any]] = None


@dataclass
class PolicyDecision:
    """Hook/policy decision for a requested operation"""
    require_approval: bool = False
    blocked: bool = False
    reason: str = ""


EventCallback = Callable[[AgentEvent], Awaitable[None]]
