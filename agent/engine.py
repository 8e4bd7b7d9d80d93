"""
ConversationEngine: the gather -> act -> verify loop for one user turn.

States: idle -> awaiting_model -> (tool_round | responding) -> idle.
Tool calls run strictly in the order the model emitted them; rounds are
bounded by ``max_tool_rounds``. Verification failures come back to the model
as a user message, which is the only retry mechanism.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from agent.cancellation import CancellationToken
from agent.events import AgentEvent, EventCallback
from agent.hooks import HookRunner
from agent.messages import ChatEntry, ConversationMessage, ToolCall, transcript_dicts
from agent.mode import OperationModeState, blocked_in_planning_message
from agent.prompts import compose_system_prompt
from agent.streaming import CANCELLED_NOTICE, AssembledMessage, StreamAssembler, finalize_message
from agent.subagents import SubagentDispatcher, SubtaskRequest
from agent.verification import (
    VERIFICATION_FEEDBACK_TEMPLATE,
    VerificationConfig,
    VerificationGate,
    format_feedback,
)
from backend import Backend
from config import app_config, model_config, get_context_window
from context.budget import TokenBudget, estimate_messages_tokens
from context.cache import ContextCache
from context.orchestrator import ContextOrchestrator, compact, format_bundle
from context.telemetry import ContextTelemetry
from context.types import ContextRequest
from tools._common import ToolResult
from tools.dispatch import LocalToolExecutor, ToolExecutor
from tools.schemas import tool_definitions, tool_name
from tools.search_ops import FileSearch

logger = logging.getLogger(__name__)

ROUND_LIMIT_NOTICE = "Maximum tool execution rounds reached. Stopping to prevent infinite loops."
TOOL_PLACEHOLDER_CONTENT = "Using tools to help you..."
TURN_ABORTED_ERROR = "Turn aborted"
# Compact the transcript once it fills this share of the context window
_COMPACT_THRESHOLD = 0.8

ApprovalCallback = Callable[[ToolCall], Awaitable[bool]]


async def _ignore_event(event: AgentEvent) -> None:
    return None


class ConversationEngine:
    """Runs user turns against a model backend and a tool executor.

    ``service`` must provide ``complete(messages, tools)`` and
    ``stream_complete(messages, tools)`` (see BedrockService).
    """

    def __init__(
        self,
        service: Any,
        tool_executor: ToolExecutor,
        orchestrator: Optional[ContextOrchestrator] = None,
        verification_gate: Optional[VerificationGate] = None,
        mode_state: Optional[OperationModeState] = None,
        hooks: Optional[HookRunner] = None,
        request_approval: Optional[ApprovalCallback] = None,
        max_tool_rounds: Optional[int] = None,
        allowed_tools: Optional[List[str]] = None,
        can_spawn_subagents: bool = True,
        system_prompt: Optional[str] = None,
        streaming: Optional[bool] = None,
        context_window: Optional[int] = None,
        reserved_fraction: Optional[float] = None,
        verification_mode: Optional[str] = None,
        working_directory: Optional[str] = None,
    ):
        if not can_spawn_subagents and orchestrator is not None and orchestrator.dispatcher is not None:
            raise ValueError("An engine that cannot spawn subagents must not be given a dispatcher")

        self.service = service
        self.tool_executor = tool_executor
        self.orchestrator = orchestrator
        self.verification_gate = verification_gate
        self.mode_state = mode_state or OperationModeState()
        self.hooks = hooks or HookRunner()
        self.request_approval = request_approval
        self.max_tool_rounds = max_tool_rounds if max_tool_rounds is not None else app_config.max_tool_rounds
        self.allowed_tools = list(allowed_tools) if allowed_tools is not None else None
        self.can_spawn_subagents = can_spawn_subagents
        self.streaming = app_config.streaming if streaming is None else streaming
        self.context_window = context_window or get_context_window(model_config.model_id)
        self.reserved_fraction = (
            app_config.context_reserved_fraction if reserved_fraction is None else reserved_fraction
        )
        self.verification_mode = verification_mode
        self.working_directory = working_directory or app_config.working_directory

        self.tools = tool_definitions(self.allowed_tools)
        self.system_prompt = system_prompt or compose_system_prompt(
            self.working_directory,
            [tool_name(t) for t in self.tools],
            subagent=not can_spawn_subagents,
        )
        self.messages: List[ConversationMessage] = [ConversationMessage(role="system", content=self.system_prompt)]
        self.chat_history: List[ChatEntry] = []
        self.state = "idle"
        self._cancel_token: Optional[CancellationToken] = None

    # ── public API ──────────────────────────────────────────

    def transcript(self) -> List[Dict[str, Any]]:
        return transcript_dicts(self.messages)

    def cancel(self) -> None:
        """Stop making further model/tool calls in the running turn."""
        if self._cancel_token is not None:
            logger.info("Cancelling current turn")
            self._cancel_token.cancel()

    def reset(self) -> None:
        self.messages = [ConversationMessage(role="system", content=self.system_prompt)]
        self.chat_history = []

    async def run_turn(self, message: str, on_event: Optional[EventCallback] = None) -> List[ChatEntry]:
        """Process one user message through to a final answer. Returns the turn's new chat entries."""
        emit = on_event or _ignore_event
        token = CancellationToken()
        cancel_running = getattr(self.tool_executor, "cancel", None)
        if cancel_running is not None:
            token.on_cancel(cancel_running)
        self._cancel_token = token
        new_entries: List[ChatEntry] = []

        def add_entry(entry: ChatEntry) -> ChatEntry:
            self.chat_history.append(entry)
            new_entries.append(entry)
            return entry

        add_entry(ChatEntry(type="user", content=message))
        self.messages.append(ConversationMessage(role="user", content=message))

        try:
            await self._gather(message, emit)

            rounds = 0
            while rounds < self.max_tool_rounds:
                if token.cancelled:
                    await self._record_cancel(add_entry, emit)
                    break

                self.state = "awaiting_model"
                response = await self._request_model(emit, token)
                if response.cancelled:
                    add_entry(ChatEntry(type="assistant", content=CANCELLED_NOTICE.strip()))
                    break

                if not response.tool_calls:
                    self.state = "responding"
                    self.messages.append(ConversationMessage(role="assistant", content=response.content))
                    add_entry(ChatEntry(type="assistant", content=response.content))
                    await emit(AgentEvent(type="done", content=response.content))
                    break

                rounds += 1
                self.state = "tool_round"
                await self._run_tool_round(response, rounds, add_entry, emit, token)
                if token.cancelled:
                    await self._record_cancel(add_entry, emit)
                    break
            else:
                logger.warning(f"Tool round limit reached ({self.max_tool_rounds})")
                add_entry(ChatEntry(type="assistant", content=ROUND_LIMIT_NOTICE))
                await emit(AgentEvent(type="round_limit", content=ROUND_LIMIT_NOTICE,
                                      data={"rounds": rounds}))
        except Exception as e:
            logger.error(f"Turn failed: {e}", exc_info=True)
            add_entry(ChatEntry(type="assistant", content=f"Sorry, I encountered an error: {e}"))
            await emit(AgentEvent(type="error", content=str(e)))
        finally:
            self.state = "idle"
            self._cancel_token = None

        return new_entries

    # ── gather ──────────────────────────────────────────────

    async def _gather(self, query: str, emit: EventCallback) -> None:
        if self.orchestrator is None:
            return
        transcript = self.transcript()
        request = ContextRequest(
            query=query,
            budget=TokenBudget.for_history(self.context_window, self.reserved_fraction, transcript),
            history=transcript,
        )
        try:
            bundle = await self.orchestrator.gather(request)
        except Exception as e:
            logger.warning(f"Context gathering failed, continuing without context: {e}")
            return
        if bundle.is_empty:
            return
        self.messages.append(ConversationMessage(
            role="system",
            content=format_bundle(bundle, self.working_directory),
        ))
        meta = bundle.metadata
        await emit(AgentEvent(
            type="gather",
            content=f"{len(bundle.sources)} sources, {meta.tokens_used} tokens",
            data={
                "strategy": meta.strategy,
                "sources": [s.metadata.get("display_path", s.path) for s in bundle.sources],
                "cache_hits": meta.cache_hits,
                "budget_exceeded": meta.budget_exceeded,
            },
        ))

    # ── act ─────────────────────────────────────────────────

    def _model_messages(self) -> List[Dict[str, Any]]:
        messages = self.transcript()
        if estimate_messages_tokens(messages) > self.context_window * _COMPACT_THRESHOLD:
            logger.info(f"Compacting transcript of {len(messages)} messages")
            messages = compact(messages)
            # A compacted window must not open on orphaned tool results
            while len(messages) > 1 and messages[1].get("role") == "tool":
                messages.pop(1)
        return messages

    async def _request_model(self, emit: EventCallback, token: CancellationToken) -> AssembledMessage:
        messages = self._model_messages()
        if self.streaming:
            stream = self.service.stream_complete(messages, self.tools)
            return await StreamAssembler(emit).assemble(stream, token)

        reply = await self.service.complete(messages, self.tools)
        if token.cancelled:
            await emit(AgentEvent(type="cancelled", content=CANCELLED_NOTICE))
            return AssembledMessage(cancelled=True)
        assembled = finalize_message(reply)
        if assembled.content:
            await emit(AgentEvent(type="content", content=assembled.content))
        if assembled.tool_calls:
            await emit(AgentEvent(type="tool_calls", data={"tool_calls": [c.to_dict() for c in assembled.tool_calls]}))
        return assembled

    async def _run_tool_round(self, response: AssembledMessage, round_number: int,
                              add_entry: Callable[[ChatEntry], ChatEntry],
                              emit: EventCallback, token: CancellationToken) -> None:
        calls = response.tool_calls
        self.messages.append(ConversationMessage(
            role="assistant", content=response.content, tool_calls=tuple(calls),
        ))
        add_entry(ChatEntry(type="assistant", content=response.content or TOOL_PLACEHOLDER_CONTENT))

        pending = [(call, add_entry(ChatEntry(type="tool_call", content="Executing...", tool_call=call)))
                   for call in calls]
        feedback: List[str] = []
        answered = 0

        try:
            for call, entry in pending:
                if token.cancelled:
                    result = ToolResult(success=False, output="", error="Cancelled by user")
                else:
                    await emit(AgentEvent(type="tool_call", content=call.name,
                                          data={"id": call.id, "name": call.name, "arguments": call.arguments,
                                                "round": round_number}))
                    result = await self._execute_tool_call(call, emit)

                entry.complete(result)
                self.messages.append(ConversationMessage(
                    role="tool",
                    content=result.output if result.success else f"Error: {result.error or 'unknown error'}",
                    tool_call_id=call.id,
                ))
                answered += 1
                await emit(AgentEvent(
                    type="tool_result",
                    content=result.output if result.success else (result.error or ""),
                    data={"id": call.id, "name": call.name, "success": result.success,
                          "file_path": result.file_path, "operation": result.operation},
                ))

                if result.success and self.verification_gate is not None and not token.cancelled:
                    verification = await self.verification_gate.verify(result, self.verification_mode)
                    if verification.checks:
                        await emit(AgentEvent(
                            type="verification",
                            content="passed" if verification.passed else "failed",
                            data={"file_path": result.file_path, "passed": verification.passed,
                                  "checks": {name: c.passed for name, c in verification.checks.items()}},
                        ))
                    if not verification.passed:
                        feedback.append(format_feedback(verification))
        finally:
            # Every tool call in the transcript needs a result, even when the round blew up
            for call, entry in pending[answered:]:
                aborted = ToolResult(success=False, output="", error=TURN_ABORTED_ERROR)
                entry.complete(aborted)
                self.messages.append(ConversationMessage(
                    role="tool", content=f"Error: {TURN_ABORTED_ERROR}", tool_call_id=call.id,
                ))

        # Feedback follows every tool message so each call keeps its direct result
        for text in feedback:
            self.messages.append(ConversationMessage(
                role="user", content=VERIFICATION_FEEDBACK_TEMPLATE.format(feedback=text),
            ))

    async def _execute_tool_call(self, call: ToolCall, emit: EventCallback) -> ToolResult:
        if self.allowed_tools is not None and call.name not in self.allowed_tools:
            return ToolResult(success=False, output="", error=f'Tool "{call.name}" is not available to this agent')

        if not self.mode_state.is_write_allowed(call.name):
            message = blocked_in_planning_message(call.name)
            await emit(AgentEvent(type="mode_blocked", content=message, data={"name": call.name}))
            return ToolResult(success=False, output="", error=message)

        try:
            decision = await self.hooks.before_tool(call)
        except Exception as e:
            logger.warning(f"Pre-tool hook crashed for {call.name}: {e}")
            decision = None
        if decision is not None and decision.blocked:
            return ToolResult(success=False, output="", error=f"Blocked by hook: {decision.reason}")

        if self.request_approval is not None and self.mode_state.requires_approval(call.name):
            if not await self.request_approval(call):
                return ToolResult(success=False, output="", error=f"User denied {call.name}")

        try:
            result = await self.tool_executor.execute(call)
        except Exception as e:
            logger.error(f"Tool executor raised for {call.name}: {e}")
            result = ToolResult(success=False, output="", error=f"Tool execution error: {e}")

        try:
            await self.hooks.after_tool(call, result)
        except Exception as e:
            logger.warning(f"Post-tool hook crashed for {call.name}: {e}")
        return result

    async def _record_cancel(self, add_entry: Callable[[ChatEntry], ChatEntry], emit: EventCallback) -> None:
        add_entry(ChatEntry(type="assistant", content=CANCELLED_NOTICE.strip()))
        await emit(AgentEvent(type="cancelled", content=CANCELLED_NOTICE))


class EngineFactory:
    """Builds top-level engines and their isolated sub-agent engines.

    The cache and operation mode are created once here and passed by
    reference into every engine built by this factory.
    """

    def __init__(
        self,
        service: Any,
        backend: Backend,
        mode_state: Optional[OperationModeState] = None,
        cache: Optional[ContextCache] = None,
        telemetry: Optional[ContextTelemetry] = None,
        hooks: Optional[HookRunner] = None,
        request_approval: Optional[ApprovalCallback] = None,
        verification_config: Optional[VerificationConfig] = None,
        on_subagent_event: Optional[EventCallback] = None,
    ):
        self.service = service
        self.backend = backend
        self.mode_state = mode_state or OperationModeState()
        self.telemetry = telemetry or ContextTelemetry()
        self.cache = cache or ContextCache(
            max_entries=app_config.cache_max_entries,
            ttl=app_config.cache_ttl,
            watch_paths=[backend.working_directory] if app_config.cache_watch_enabled else None,
        )
        self.hooks = hooks
        self.request_approval = request_approval
        self.verification_config = verification_config or VerificationConfig()
        self.on_subagent_event = on_subagent_event
        self._approval_lock: Optional[asyncio.Lock] = None

    def _verification_gate(self, backend: Backend) -> Optional[VerificationGate]:
        if not app_config.verification_enabled:
            return None
        return VerificationGate(backend, self.verification_config, self.telemetry)

    def build(self) -> ConversationEngine:
        dispatcher = None
        if app_config.subagents_enabled:
            dispatcher = SubagentDispatcher(
                self.for_subagent,
                max_concurrent=app_config.subagent_max_concurrent,
                timeout=app_config.subagent_timeout,
                on_event=self.on_subagent_event,
            )
        orchestrator = ContextOrchestrator(
            cache=self.cache,
            search=FileSearch(self.backend),
            backend=self.backend,
            dispatcher=dispatcher,
            telemetry=self.telemetry,
            cache_enabled=app_config.context_cache_enabled,
            max_sources=app_config.context_max_sources,
        )
        return ConversationEngine(
            service=self.service,
            tool_executor=LocalToolExecutor(self.backend, self.mode_state),
            orchestrator=orchestrator,
            verification_gate=self._verification_gate(self.backend),
            mode_state=self.mode_state,
            hooks=self.hooks,
            request_approval=self.request_approval,
            working_directory=self.backend.working_directory,
        )

    def for_subagent(self, subtask: SubtaskRequest) -> ConversationEngine:
        """A fresh engine restricted to the subtask's tools that cannot spawn subagents.

        Each sub-agent runs commands on its own forked backend so a timed-out
        sub-agent can be stopped without touching its siblings.
        """
        backend = self.backend.fork()
        return ConversationEngine(
            service=self.service,
            tool_executor=LocalToolExecutor(backend),
            orchestrator=None,
            verification_gate=self._verification_gate(backend),
            mode_state=self.mode_state,
            hooks=self.hooks,
            request_approval=self._approve_serially if self.request_approval is not None else None,
            max_tool_rounds=app_config.subagent_max_tool_rounds,
            allowed_tools=subtask.tools,
            can_spawn_subagents=False,
            working_directory=backend.working_directory,
        )

    async def _approve_serially(self, call: ToolCall) -> bool:
        # Parallel sub-agents share one prompt; ask one question at a time
        if self._approval_lock is None:
            self._approval_lock = asyncio.Lock()
        async with self._approval_lock:
            return await self.request_approval(call)

    def dispose(self) -> None:
        self.cache.dispose()
