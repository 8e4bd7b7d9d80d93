"""
Context gathering data types: sources, cache entries, requests and bundles.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from context.budget import TokenBudget

LineRange = Tuple[int, int]


@dataclass(frozen=True)
class ContextSource:
    """One piece of gathered context (file, snippet or search result)."""
    path: str
    content: str
    type: str = "file"  # file | snippet | search-result
    tokens: int = 0
    line_range: Optional[LineRange] = None
    relevance: float = 1.0
    from_cache: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CacheEntry:
    """A cached ContextSource with expiry bookkeeping."""
    source: ContextSource
    cached_at: float
    ttl: float
    hits: int = 0

    def expired(self, now: float) -> bool:
        return now - self.cached_at > self.ttl


@dataclass
class ContextRequest:
    """Input to a gather operation."""
    query: str
    budget: TokenBudget
    intent: Optional[str] = None
    history: List[Any] = field(default_factory=list)
    priority_files: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)


@dataclass
class ContextMetadata:
    files_scanned: int = 0
    files_read: int = 0
    tokens_used: int = 0
    strategy: str = "agentic-search"
    duration: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0
    budget_exceeded: bool = False
    warnings: List[str] = field(default_factory=list)
    subagent_results: Optional[Dict[str, int]] = None


@dataclass
class ContextBundle:
    sources: List[ContextSource] = field(default_factory=list)
    metadata: ContextMetadata = field(default_factory=ContextMetadata)

    @property
    def is_empty(self) -> bool:
        return not self.sources
