"""
Context package - token-budgeted context gathering.

- budget: TokenBudget and token estimation
- types: ContextSource, CacheEntry, ContextRequest, ContextBundle
- cache: ContextCache with watchdog-driven invalidation
- snippets: SnippetBuilder, declaration-only views of oversized files
- orchestrator: ContextOrchestrator (gather phase) and helpers
- telemetry: rolling operation metrics
"""

from .budget import TokenBudget, estimate_tokens, estimate_messages_tokens
from .types import ContextSource, CacheEntry, ContextRequest, ContextMetadata, ContextBundle
from .cache import ContextCache, normalize_path
from .snippets import CodeSnippet, SnippetBuilder
from .telemetry import ContextTelemetry
from .orchestrator import (
    ContextOrchestrator,
    extract_keywords,
    parse_search_results,
    detect_intent,
    compact,
    format_bundle,
)

__all__ = [
    "TokenBudget",
    "estimate_tokens",
    "estimate_messages_tokens",
    "ContextSource",
    "CacheEntry",
    "ContextRequest",
    "ContextMetadata",
    "ContextBundle",
    "ContextCache",
    "normalize_path",
    "CodeSnippet",
    "SnippetBuilder",
    "ContextTelemetry",
    "ContextOrchestrator",
    "extract_keywords",
    "parse_search_results",
    "detect_intent",
    "compact",
    "format_bundle",
]
