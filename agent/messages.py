"""
Transcript data types: the model-facing ConversationMessage, the UI-facing
ChatEntry, and the ToolCall they both carry.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from tools._common import ToolResult


@dataclass(frozen=True)
class ToolCall:
    """A model-requested action with its serialized JSON arguments."""
    id: str
    name: str
    arguments: str = "{}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        function = data.get("function") or {}
        arguments = function.get("arguments", "")
        return cls(
            id=data.get("id") or "",
            name=function.get("name") or "",
            arguments=arguments if isinstance(arguments, str) else str(arguments),
        )


@dataclass(frozen=True)
class ConversationMessage:
    """One model-facing transcript message. Never mutated once appended."""
    role: str  # system | user | assistant | tool
    content: Optional[str] = None
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_call_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": self.role, "content": self.content or ""}
        if self.tool_calls:
            message["tool_calls"] = [c.to_dict() for c in self.tool_calls]
        if self.tool_call_id:
            message["tool_call_id"] = self.tool_call_id
        return message


@dataclass
class ChatEntry:
    """One UI-facing transcript entry.

    A ``tool_call`` entry is upgraded in place to ``tool_result`` once the
    call has executed.
    """
    type: str  # user | assistant | tool_call | tool_result
    content: str
    timestamp: datetime = field(default_factory=datetime.now)
    tool_call: Optional[ToolCall] = None
    tool_result: Optional[ToolResult] = None

    def complete(self, result: ToolResult) -> None:
        self.type = "tool_result"
        self.tool_result = result
        self.content = result.output if result.success else (result.error or "Error occurred")


def transcript_dicts(messages: List[ConversationMessage]) -> List[Dict[str, Any]]:
    return [m.to_dict() for m in messages]
