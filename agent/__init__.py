"""
Agent package - the conversation engine and its collaborators.

Modules:
- events: AgentEvent and PolicyDecision data types
- messages: ToolCall, ConversationMessage and ChatEntry transcript types
- cancellation: Per-turn cancellation token
- streaming: Delta merging and stream assembly
- mode: Operation mode state (normal / auto-approve / planning)
- hooks: Pre/post tool hooks
- verification: Post-action lint / test / type-check gate
- subagents: Isolated sub-agent dispatch
- prompts: System prompt composition
- engine: ConversationEngine and EngineFactory
"""

from .events import AgentEvent, PolicyDecision, EventCallback
from .cancellation import CancellationToken
from .messages import ToolCall, ConversationMessage, ChatEntry, transcript_dicts
from .streaming import merge_delta, StreamAssembler, AssembledMessage, CANCELLED_NOTICE
from .mode import OperationMode, OperationModeState, blocked_in_planning_message
from .hooks import HookRunner, HookConfig, CommandHookRunner
from .verification import (
    CheckResult,
    VerificationResult,
    VerificationConfig,
    VerificationGate,
    format_feedback,
)
from .subagents import (
    SubtaskRequest,
    SubagentResult,
    SubagentDispatcher,
    SubagentNestingError,
    detect_parallelizable_task,
)
from .prompts import compose_system_prompt
from .engine import ConversationEngine, EngineFactory, ROUND_LIMIT_NOTICE

__all__ = [
    "AgentEvent",
    "PolicyDecision",
    "EventCallback",
    "CancellationToken",
    "ToolCall",
    "ConversationMessage",
    "ChatEntry",
    "transcript_dicts",
    "merge_delta",
    "StreamAssembler",
    "AssembledMessage",
    "CANCELLED_NOTICE",
    "OperationMode",
    "OperationModeState",
    "blocked_in_planning_message",
    "HookRunner",
    "HookConfig",
    "CommandHookRunner",
    "CheckResult",
    "VerificationResult",
    "VerificationConfig",
    "VerificationGate",
    "format_feedback",
    "SubtaskRequest",
    "SubagentResult",
    "SubagentDispatcher",
    "SubagentNestingError",
    "detect_parallelizable_task",
    "compose_system_prompt",
    "ConversationEngine",
    "EngineFactory",
    "ROUND_LIMIT_NOTICE",
]
