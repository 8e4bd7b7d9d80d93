"""
Rolling metrics for context operations (gather, cache, verification, subagents).
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, asdict
from typing import Any, Deque, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class OperationMetric:
    operation: str
    timestamp: float
    duration: float
    tokens_estimated: int = 0
    cache_hit: bool = False
    strategy: Optional[str] = None


class ContextTelemetry:
    """Keeps the last ``max_history`` metrics in memory."""

    def __init__(self, max_history: int = 1000):
        self._metrics: Deque[OperationMetric] = deque(maxlen=max_history)

    def record(self, operation: str, duration: float, tokens: int = 0,
               cache_hit: bool = False, strategy: Optional[str] = None) -> None:
        self._metrics.append(OperationMetric(
            operation=operation,
            timestamp=time.time(),
            duration=duration,
            tokens_estimated=tokens,
            cache_hit=cache_hit,
            strategy=strategy,
        ))

    def snapshot(self, recent: int = 10) -> Dict[str, Any]:
        metrics = list(self._metrics)
        total = len(metrics)
        breakdown: Dict[str, int] = {}
        for m in metrics:
            breakdown[m.operation] = breakdown.get(m.operation, 0) + 1
        return {
            "total_operations": total,
            "avg_tokens": sum(m.tokens_estimated for m in metrics) / total if total else 0.0,
            "avg_duration": sum(m.duration for m in metrics) / total if total else 0.0,
            "cache_hit_rate": sum(1 for m in metrics if m.cache_hit) / total if total else 0.0,
            "operation_breakdown": breakdown,
            "recent_operations": [asdict(m) for m in metrics[-recent:]],
        }

    def reset(self) -> None:
        self._metrics.clear()
