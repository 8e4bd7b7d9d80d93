"""
Sub-agent dispatch.

Each subtask runs in a fresh, isolated ConversationEngine built by a factory
that disables further spawning. Subtasks run in batches no larger than
``max_concurrent``; every member of a batch resolves before the next starts.
Each sub-agent races a timeout and a timed-out sub-agent is abandoned.
"""

import asyncio
import contextvars
import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from agent.events import AgentEvent, EventCallback
from agent.messages import ChatEntry
from context.budget import estimate_messages_tokens

logger = logging.getLogger(__name__)

SUBAGENT_TOOLS = ["view_file", "str_replace_editor", "replace_lines", "create_file"]
SUMMARY_MAX_CHARS = 2000  # roughly 500 tokens
_WRITE_OPERATIONS = {"create", "str_replace", "replace_lines"}

_ALL_FILES_PHRASES = ("all files", "tous les fichiers", "all *.", "every file")
_ALL_FILES_PATTERNS = (re.compile(r"\ball\s+\w+"), re.compile(r"\bevery\s+\w+"))

# Depth of the sub-agent currently running in this task (0 = top level)
_subagent_depth: contextvars.ContextVar[int] = contextvars.ContextVar("subagent_depth", default=0)


class SubagentNestingError(RuntimeError):
    """Raised when a sub-agent tries to spawn another sub-agent."""


@dataclass
class SubtaskRequest:
    files: List[str]
    instruction: str
    tools: List[str] = field(default_factory=lambda: list(SUBAGENT_TOOLS))
    context_budget: int = 2000


@dataclass
class SubagentResult:
    summary: str
    success: bool
    changes: List[str] = field(default_factory=list)
    error: Optional[str] = None
    tools_used: int = 0
    tokens_used: int = 0
    files_read: int = 0
    duration: float = 0.0

    @property
    def metadata(self) -> Dict[str, Any]:
        return {
            "tools_used": self.tools_used,
            "tokens_used": self.tokens_used,
            "files_read": self.files_read,
            "files_modified": len(self.changes),
            "duration": self.duration,
        }


def build_subagent_prompt(subtask: SubtaskRequest) -> str:
    files = "\n".join(f"- {f}" for f in subtask.files)
    return (
        f"{subtask.instruction}\n\n"
        f"Files to process:\n{files}\n\n"
        "IMPORTANT:\n"
        "- You are a subagent with an isolated context.\n"
        f"- Use ONLY these tools: {', '.join(subtask.tools)}.\n"
        "- Finish with a concise summary (under 500 tokens).\n"
        "- List every file you modified.\n"
        "- Do NOT spawn other subagents."
    )


def extract_summary(entries: List[ChatEntry]) -> str:
    """Join the last one or two non-empty assistant entries, capped to ~500 tokens."""
    texts = [e.content for e in entries if e.type == "assistant" and e.content.strip()]
    if not texts:
        return "No summary available"
    summary = "\n\n".join(texts[-2:])
    if len(summary) > SUMMARY_MAX_CHARS:
        summary = summary[:SUMMARY_MAX_CHARS] + "... (truncated)"
    return summary


def looks_parallelizable(query: str) -> bool:
    lowered = query.lower()
    if any(phrase in lowered for phrase in _ALL_FILES_PHRASES):
        return True
    return any(p.search(lowered) for p in _ALL_FILES_PATTERNS)


def split_evenly(items: List[str], groups: int) -> List[List[str]]:
    """Split into at most ``groups`` contiguous chunks; the remainder goes to the leading chunks."""
    groups = max(1, min(groups, len(items)))
    base, extra = divmod(len(items), groups)
    chunks, start = [], 0
    for i in range(groups):
        size = base + (1 if i < extra else 0)
        chunks.append(items[start:start + size])
        start += size
    return chunks


def detect_parallelizable_task(query: str, files: List[str], max_batches: int = 3) -> Optional[List[SubtaskRequest]]:
    """Split an all-files request over at least three files into per-sub-agent subtasks."""
    if not looks_parallelizable(query) or len(files) < 3:
        return None
    return [
        SubtaskRequest(files=chunk, instruction=query, tools=list(SUBAGENT_TOOLS))
        for chunk in split_evenly(files, max_batches)
    ]


class _ActivityCollector:
    """Tallies a sub-agent's tool activity from its event stream."""

    def __init__(self, forward: Optional[EventCallback]):
        self.forward = forward
        self.tools_used = 0
        self.files_read = 0
        self.changes: List[str] = []

    async def __call__(self, event: AgentEvent) -> None:
        if event.type == "tool_result" and event.data:
            self.tools_used += 1
            path = event.data.get("file_path")
            if event.data.get("success") and path:
                if event.data.get("operation") == "view":
                    self.files_read += 1
                elif event.data.get("operation") in _WRITE_OPERATIONS and path not in self.changes:
                    self.changes.append(path)
        if self.forward is not None:
            await self.forward(event)


class SubagentDispatcher:
    """Spawns isolated engines for subtasks.

    ``engine_factory(subtask)`` must return an engine that cannot spawn
    sub-agents itself (see EngineFactory.for_subagent).
    """

    def __init__(
        self,
        engine_factory: Callable[[SubtaskRequest], Any],
        max_concurrent: int = 3,
        timeout: float = 60.0,
        on_event: Optional[EventCallback] = None,
    ):
        self.engine_factory = engine_factory
        self.max_concurrent = max(1, max_concurrent)
        self.timeout = timeout
        self.on_event = on_event
        self._active = 0

    @property
    def active_count(self) -> int:
        return self._active

    def looks_parallelizable(self, query: str) -> bool:
        return looks_parallelizable(query)

    def split_task(self, query: str, files: List[str]) -> Optional[List[SubtaskRequest]]:
        return detect_parallelizable_task(query, files, self.max_concurrent)

    async def spawn(self, subtask: SubtaskRequest) -> SubagentResult:
        if _subagent_depth.get() > 0:
            raise SubagentNestingError("Subagents cannot spawn other subagents")

        start = time.monotonic()
        collector = _ActivityCollector(self.on_event)
        depth_token = _subagent_depth.set(_subagent_depth.get() + 1)
        self._active += 1
        engine = None
        task = None
        try:
            engine = self.engine_factory(subtask)
            if self.on_event is not None:
                await self.on_event(AgentEvent(type="subagent_start", data={"files": list(subtask.files)}))
            task = asyncio.ensure_future(engine.run_turn(build_subagent_prompt(subtask), on_event=collector))
            done, _ = await asyncio.wait({task}, timeout=self.timeout)
            if task not in done:
                # Cancel while the turn is still live so its running command gets killed
                engine.cancel()
                task.cancel()
                await asyncio.wait({task})
                return self._failed(f"timed out after {self.timeout}s", start, collector)
            entries = task.result()
        except Exception as e:
            logger.error(f"Subagent failed: {e}")
            return self._failed(str(e), start, collector)
        finally:
            if task is not None and not task.done():
                task.cancel()
            self._active -= 1
            _subagent_depth.reset(depth_token)

        result = SubagentResult(
            summary=extract_summary(entries),
            success=True,
            changes=collector.changes,
            tools_used=collector.tools_used,
            tokens_used=estimate_messages_tokens(engine.transcript()),
            files_read=collector.files_read,
            duration=time.monotonic() - start,
        )
        if self.on_event is not None:
            await self.on_event(AgentEvent(type="subagent_done", content=result.summary, data=result.metadata))
        return result

    def _failed(self, error: str, start: float, collector: _ActivityCollector) -> SubagentResult:
        return SubagentResult(
            summary=f"Subagent failed: {error}",
            success=False,
            error=error,
            changes=collector.changes,
            tools_used=collector.tools_used,
            files_read=collector.files_read,
            duration=time.monotonic() - start,
        )

    async def spawn_parallel(self, subtasks: List[SubtaskRequest]) -> List[SubagentResult]:
        """Run subtasks in sequential batches of at most ``max_concurrent``."""
        results: List[SubagentResult] = []
        batches = math.ceil(len(subtasks) / self.max_concurrent)
        for b in range(batches):
            batch = subtasks[b * self.max_concurrent:(b + 1) * self.max_concurrent]
            logger.info(f"Subagent batch {b + 1}/{batches}: {len(batch)} subtasks")
            outcomes = await asyncio.gather(*(self.spawn(t) for t in batch), return_exceptions=True)
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    results.append(SubagentResult(
                        summary=f"Subagent failed: {outcome}", success=False, error=str(outcome),
                    ))
                else:
                    results.append(outcome)
        return results
