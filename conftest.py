"""
Shared fakes for the test suite: a scripted model service, a scripted
command backend, a canned search collaborator and an event recorder.
"""

import copy
import json
import time
from typing import Any, Dict, List, Optional, Tuple

import pytest

from agent.events import AgentEvent
from backend import LocalBackend


def tool_call(name: str, arguments: Optional[Dict[str, Any]] = None, call_id: str = "call_1") -> Dict[str, Any]:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": json.dumps(arguments or {})},
    }


def tool_reply(*calls: Dict[str, Any], content: str = "") -> Dict[str, Any]:
    return {"role": "assistant", "content": content, "tool_calls": list(calls)}


def text_reply(text: str) -> Dict[str, Any]:
    return {"role": "assistant", "content": text, "tool_calls": []}


def reply_to_deltas(reply: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Split a whole reply into the partial deltas a streaming backend would send."""
    deltas: List[Dict[str, Any]] = []
    content = reply.get("content") or ""
    if content:
        middle = len(content) // 2
        deltas.append({"content": content[:middle]})
        deltas.append({"content": content[middle:]})
    for position, call in enumerate(reply.get("tool_calls") or []):
        padding = [{} for _ in range(position)]
        function = call["function"]
        deltas.append({"tool_calls": padding + [{
            "index": position,
            "id": call["id"],
            "type": "function",
            "function": {"name": function["name"], "arguments": ""},
        }]})
        arguments = function["arguments"]
        middle = len(arguments) // 2
        for fragment in (arguments[:middle], arguments[middle:]):
            if fragment:
                deltas.append({"tool_calls": padding + [{"index": position, "function": {"arguments": fragment}}]})
    return [d for d in deltas if d.get("content") != ""]


class FakeService:
    """Returns scripted replies in order; the last reply repeats once the script runs out."""

    def __init__(self, replies: List[Any]):
        self.replies = list(replies)
        self.requests: List[List[Dict[str, Any]]] = []
        self.tools: List[Any] = []

    def _next(self) -> Dict[str, Any]:
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return copy.deepcopy(reply)

    async def complete(self, messages, tools=None):
        self.requests.append(copy.deepcopy(messages))
        self.tools.append(tools)
        return self._next()

    async def stream_complete(self, messages, tools=None):
        self.requests.append(copy.deepcopy(messages))
        self.tools.append(tools)
        reply = self._next()
        if isinstance(reply, list):
            deltas = reply
        else:
            deltas = reply_to_deltas(reply)
        for delta in deltas:
            yield delta


class StubBackend(LocalBackend):
    """LocalBackend whose run_command answers from a script instead of a shell.

    ``responses`` is a list of (substring, (stdout, stderr, rc)); the first
    entry whose substring occurs in the command wins. ``delay`` makes every
    command take that many seconds.
    """

    def __init__(self, working_directory: str,
                 responses: Optional[List[Tuple[str, Tuple[str, str, int]]]] = None,
                 delay: float = 0.0):
        super().__init__(working_directory)
        self.responses = responses or []
        self.delay = delay
        self.commands: List[str] = []
        self.cancelled = False
        self.forks: List["StubBackend"] = []

    def run_command(self, command: str, cwd: str, timeout: float = 30) -> Tuple[str, str, int]:
        self.commands.append(command)
        if self.delay:
            time.sleep(self.delay)
        for needle, response in self.responses:
            if needle in command:
                return response
        return "", "", 0

    def cancel_running_command(self) -> bool:
        self.cancelled = True
        return False

    def fork(self) -> "StubBackend":
        child = StubBackend(self.working_directory, self.responses, self.delay)
        self.forks.append(child)
        return child


class FakeSearch:
    """Search collaborator that returns canned output and records queries."""

    def __init__(self, output: str = "", error: Optional[Exception] = None):
        self.output = output
        self.error = error
        self.queries: List[Tuple[str, Dict[str, Any]]] = []

    def search(self, query, options=None):
        self.queries.append((query, dict(options or {})))
        if self.error is not None:
            raise self.error
        return self.output


class EventLog:
    """Async on_event callback that keeps every event."""

    def __init__(self):
        self.events: List[AgentEvent] = []

    async def __call__(self, event: AgentEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> List[str]:
        return [e.type for e in self.events]

    def of_type(self, event_type: str) -> List[AgentEvent]:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def workspace(tmp_path):
    """A small project tree."""
    (tmp_path / "hello.py").write_text("def hello():\n    return 'hi'\n")
    (tmp_path / "notes.txt").write_text("alpha\nbeta\ngamma\n")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "cache_utils.py").write_text("CACHE = {}\n\ndef cache_get(key):\n    return CACHE.get(key)\n")
    return tmp_path


@pytest.fixture
def backend(workspace):
    return LocalBackend(str(workspace))


@pytest.fixture
def events():
    return EventLog()
