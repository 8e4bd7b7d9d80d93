"""
Token accounting for a single gather operation.
"""

import json
import math
from dataclasses import dataclass
from typing import Any, List


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~3.5 chars/token for code-heavy text)."""
    if not text:
        return 0
    return max(1, int(len(text) / 3.5))


def estimate_messages_tokens(messages: List[Any]) -> int:
    """Estimate tokens consumed by a serialized transcript."""
    try:
        serialized = json.dumps(messages, default=lambda o: getattr(o, "__dict__", str(o)))
    except (TypeError, ValueError):
        serialized = str(messages)
    return estimate_tokens(serialized)


@dataclass(frozen=True)
class TokenBudget:
    """Context tokens available once history has taken its share of the reserved window."""
    max_tokens: int
    reserved_fraction: float = 0.3
    used_by_history: int = 0

    @property
    def reserved(self) -> int:
        return int(math.floor(self.max_tokens * self.reserved_fraction))

    @property
    def available(self) -> int:
        return max(0, self.reserved - self.used_by_history)

    @classmethod
    def for_history(cls, max_tokens: int, reserved_fraction: float, messages: List[Any]) -> "TokenBudget":
        return cls(
            max_tokens=max_tokens,
            reserved_fraction=reserved_fraction,
            used_by_history=estimate_messages_tokens(messages),
        )
