"""
Streaming response assembly.

``merge_delta`` folds a partial delta into an accumulated message:
- missing key: adopt the delta value (list elements lose their ``index`` marker)
- str + str: concatenate
- list + list: merge element-wise by position
- dict + dict: recurse

``StreamAssembler`` drives the merge over a backend stream, reports content and
tool-call readiness through ``on_event``, withholds text that looks like a
raw JSON tool-call array, and honours a CancellationToken at every chunk.
"""

import copy
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from agent.cancellation import CancellationToken
from agent.events import AgentEvent, EventCallback
from agent.messages import ToolCall
from context.budget import estimate_tokens

logger = logging.getLogger(__name__)

CANCELLED_NOTICE = "\n\n[Operation cancelled by user]"
_TOKEN_UPDATE_INTERVAL = 0.25


# ── pure merge ──────────────────────────────────────────────

def _strip_index(item: Any) -> Any:
    if isinstance(item, dict):
        return {k: copy.deepcopy(v) for k, v in item.items() if k != "index"}
    return copy.deepcopy(item)


def _merge_value(current: Any, value: Any) -> Any:
    if current is None:
        return copy.deepcopy(value)
    if isinstance(current, str) and isinstance(value, str):
        return current + value
    if isinstance(current, list) and isinstance(value, list):
        return _merge_lists(current, value)
    if isinstance(current, dict) and isinstance(value, dict):
        return merge_delta(current, value)
    # Mismatched or scalar values keep what was accumulated first
    return current


def _merge_lists(current: List[Any], value: List[Any]) -> List[Any]:
    merged = list(current)
    for i, item in enumerate(value):
        if i >= len(merged):
            merged.append(_strip_index(item))
        else:
            merged[i] = _merge_value(merged[i], _strip_index(item))
    return merged


def merge_delta(acc: Dict[str, Any], delta: Dict[str, Any]) -> Dict[str, Any]:
    """Return a new accumulator with ``delta`` merged in. Inputs are not mutated."""
    merged = dict(acc)
    for key, value in delta.items():
        current = merged.get(key)
        if current is None:
            merged[key] = [_strip_index(v) for v in value] if isinstance(value, list) else copy.deepcopy(value)
        else:
            merged[key] = _merge_value(current, value)
    return merged


def has_named_tool_call(acc: Dict[str, Any]) -> bool:
    return any(
        isinstance(tc, dict) and (tc.get("function") or {}).get("name")
        for tc in acc.get("tool_calls") or []
    )


# ── raw JSON tool-call heuristics ───────────────────────────

def looks_like_tool_json(text: str) -> bool:
    """Approximate check for a mis-emitted JSON tool-call array.

    Known to misfire on short prose that starts with ``[`` (e.g. a markdown link).
    """
    trimmed = text.strip()
    if not trimmed.startswith("["):
        return False
    return (
        trimmed.startswith("[{")
        or '"name"' in trimmed
        or '"arguments"' in trimmed
        or len(trimmed) < 50
    )


def parse_raw_tool_calls(content: Optional[str]) -> List[ToolCall]:
    """Parse content that is entirely a JSON array of {name, arguments} objects."""
    trimmed = (content or "").strip()
    if not (trimmed.startswith("[") and trimmed.endswith("]")):
        return []
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list) or not parsed:
        return []
    for item in parsed:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str) or "arguments" not in item:
            return []

    stamp = int(time.time() * 1000)
    calls = []
    for i, item in enumerate(parsed):
        arguments = item["arguments"]
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        calls.append(ToolCall(id=f"call_{stamp}_{i}", name=item["name"], arguments=arguments))
    return calls


# ── assembler ───────────────────────────────────────────────

@dataclass
class AssembledMessage:
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    cancelled: bool = False
    from_raw_json: bool = False


def finalize_message(acc: Dict[str, Any]) -> AssembledMessage:
    """Turn an accumulated delta dict into an AssembledMessage, applying the raw-JSON fallback."""
    content = acc.get("content") or ""
    calls = [
        ToolCall.from_dict(tc) for tc in acc.get("tool_calls") or []
        if isinstance(tc, dict) and (tc.get("function") or {}).get("name")
    ]
    if calls:
        return AssembledMessage(content=content, tool_calls=calls)
    raw_calls = parse_raw_tool_calls(content)
    if raw_calls:
        logger.info(f"Parsed {len(raw_calls)} tool calls from raw JSON content")
        return AssembledMessage(content="", tool_calls=raw_calls, from_raw_json=True)
    return AssembledMessage(content=content)


class StreamAssembler:
    """Consumes one backend stream and produces one AssembledMessage."""

    def __init__(self, on_event: Optional[EventCallback] = None):
        self.on_event = on_event

    async def _emit(self, event: AgentEvent) -> None:
        if self.on_event is not None:
            await self.on_event(event)

    async def assemble(
        self,
        stream: AsyncIterator[Dict[str, Any]],
        cancel_token: Optional[CancellationToken] = None,
    ) -> AssembledMessage:
        acc: Dict[str, Any] = {}
        tool_calls_announced = False
        content_shown = False
        withheld = ""
        last_token_update = 0.0

        try:
            async for delta in stream:
                if cancel_token is not None and cancel_token.cancelled:
                    await self._emit(AgentEvent(type="cancelled", content=CANCELLED_NOTICE))
                    return AssembledMessage(cancelled=True)
                if not delta:
                    continue

                acc = merge_delta(acc, delta)

                if not tool_calls_announced and has_named_tool_call(acc):
                    tool_calls_announced = True
                    await self._emit(AgentEvent(
                        type="tool_calls",
                        data={"tool_calls": [tc for tc in acc["tool_calls"] if isinstance(tc, dict)]},
                    ))

                piece = delta.get("content")
                if not piece:
                    continue
                if not tool_calls_announced:
                    if looks_like_tool_json(acc.get("content") or ""):
                        withheld += piece
                    else:
                        await self._emit(AgentEvent(type="content", content=withheld + piece))
                        withheld = ""
                        content_shown = True
                elif content_shown:
                    await self._emit(AgentEvent(type="content", content=piece))

                now = time.monotonic()
                if now - last_token_update > _TOKEN_UPDATE_INTERVAL:
                    last_token_update = now
                    tokens = estimate_tokens(acc.get("content") or "")
                    if acc.get("tool_calls"):
                        tokens += estimate_tokens(json.dumps(acc["tool_calls"]))
                    await self._emit(AgentEvent(type="token_count", data={"tokens": tokens}))
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if cancel_token is not None and cancel_token.cancelled:
            await self._emit(AgentEvent(type="cancelled", content=CANCELLED_NOTICE))
            return AssembledMessage(cancelled=True)
        return finalize_message(acc)
