"""
Gather phase: assemble a token-budgeted context bundle for a query.

Sources come from explicit priority files first, then from a keyword search
over the project. Reads go through the ContextCache. Queries that touch
"all files" can be delegated to sub-agents when a dispatcher is attached.
"""

import asyncio
import inspect
import json
import logging
import os
import re
import time
from typing import Any, Callable, Dict, List, Optional, Set

from backend import Backend
from context.budget import estimate_tokens
from context.cache import ContextCache
from context.snippets import SnippetBuilder
from context.telemetry import ContextTelemetry
from context.types import ContextBundle, ContextMetadata, ContextRequest, ContextSource

logger = logging.getLogger(__name__)


STOP_WORDS: Set[str] = {
    # English
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
    "from", "as", "is", "was", "are", "were", "be", "been", "being", "have", "has", "had",
    "do", "does", "did", "will", "would", "could", "should", "can", "may", "might", "must",
    "this", "that", "these", "those", "i", "you", "he", "she", "it", "we", "they",
    "what", "which", "who", "where", "when", "why", "how",
    # French
    "le", "la", "les", "un", "une", "des", "de", "du", "et", "ou", "mais", "dans", "sur",
    "avec", "pour", "par", "est", "sont", "être", "avoir", "faire", "je", "tu", "il", "elle",
    "nous", "vous", "ils", "elles", "ce", "cette", "ces", "quel", "quelle", "quels", "quelles",
    "comment", "pourquoi", "où", "quand",
}

ACTION_WORDS: Set[str] = {
    "explique", "expliquer", "explain", "show", "tell", "find", "search", "trouver",
    "chercher", "voir", "comment", "pourquoi", "quoi", "moi", "me", "toi", "you",
}

INTENT_KEYWORDS: Dict[str, List[str]] = {
    "explain": [
        "explain", "what is", "what does", "how does", "describe", "document",
        "expliquer", "explique", "qu'est-ce", "comment fonctionne",
    ],
    "refactor": [
        "refactor", "restructure", "reorganize", "clean up", "improve",
        "refactoriser", "restructurer", "améliorer",
    ],
    "debug": [
        "debug", "fix", "error", "bug", "issue", "problem", "failing",
        "corriger", "erreur", "problème",
    ],
    "implement": [
        "implement", "add", "create", "build", "make", "write",
        "implémenter", "ajouter", "créer",
    ],
    "search": [
        "find", "search", "where", "locate", "look for", "list",
        "trouver", "chercher", "où",
    ],
}

_EXT = r"(?:ts|js|tsx|jsx|py|go|java|c|cpp|h|rs|rb|php|md|json|yaml|yml|toml|sh)"
_MATCHES_LINE = re.compile(r"^([^\s(]+\." + _EXT + r")\s*(?:\(\d+\s+matches?\))?", re.IGNORECASE)
_RIPGREP_LINE = re.compile(r"^([^:]+\." + _EXT + r"):", re.IGNORECASE)
_BARE_PATH = re.compile(r"^([^\s:]+\." + _EXT + r")$", re.IGNORECASE)
_ENDS_WITH_EXT = re.compile(r"\." + _EXT + r"$", re.IGNORECASE)

HISTORY_KEEP = 20


def extract_keywords(query: str) -> List[str]:
    """Lower-case, strip punctuation, drop stop words and short words, de-duplicate."""
    words = re.sub(r"[^\w\s]", " ", query.lower()).split()
    keywords: List[str] = []
    for word in words:
        if len(word) <= 2 or word in STOP_WORDS or word in keywords:
            continue
        keywords.append(word)
    technical = [w for w in keywords if w not in ACTION_WORDS]
    return technical if technical else keywords


def parse_search_results(output: str) -> List[str]:
    """Pull file paths out of search output, in discovery order without duplicates."""
    paths: List[str] = []

    def _add(path: str) -> None:
        if path and path not in paths:
            paths.append(path)

    for line in (output or "").splitlines():
        trimmed = line.strip()
        if not trimmed:
            continue
        if trimmed.startswith("Search results for"):
            continue
        if trimmed.startswith("Found:") and "." not in trimmed:
            continue

        if trimmed.startswith("{"):
            try:
                parsed = json.loads(trimmed)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict) and (parsed.get("file") or parsed.get("path")):
                _add(parsed.get("file") or parsed.get("path"))
                continue

        for pattern in (_MATCHES_LINE, _RIPGREP_LINE, _BARE_PATH):
            match = pattern.match(trimmed)
            if match:
                _add(match.group(1))
                break
        else:
            if "/" in trimmed and _ENDS_WITH_EXT.search(trimmed):
                _add(trimmed.split()[0])
    return paths


def detect_intent(query: str) -> str:
    lowered = query.lower()
    for intent, keywords in INTENT_KEYWORDS.items():
        if any(k in lowered for k in keywords):
            return intent
    return "general"


def compact(history: List[Dict[str, Any]], keep: int = HISTORY_KEEP) -> List[Dict[str, Any]]:
    """Keep every system message plus the last ``keep`` other messages."""
    system = [m for m in history if m.get("role") == "system"]
    others = [m for m in history if m.get("role") != "system"]
    return system + others[-keep:] if keep else system


def format_bundle(bundle: ContextBundle, working_directory: Optional[str] = None) -> str:
    """Render a bundle as a system-message block. Empty string for an empty bundle."""
    if bundle.is_empty:
        return ""
    meta = bundle.metadata
    parts = [
        "=== RELEVANT CONTEXT ===",
        f"Strategy: {meta.strategy}",
        f"Sources: {len(bundle.sources)}",
        f"Tokens: {meta.tokens_used}",
        f"Cache hits: {meta.cache_hits}",
        "",
    ]
    for source in bundle.sources:
        display = source.metadata.get("display_path") or source.path
        if working_directory and os.path.isabs(display):
            display = os.path.relpath(display, working_directory)
        parts.append(f"--- {display} ---")
        parts.append(f"Relevance: {source.relevance:.2f}")
        if source.line_range:
            parts.append(f"Lines: {source.line_range[0]}-{source.line_range[1]}")
        parts.append(source.content)
        parts.append("")
    parts.append("=== END CONTEXT ===")
    return "\n".join(parts)


class ContextOrchestrator:
    """Builds context bundles within a token budget.

    ``search`` is any object with ``search(query, options) -> str`` (sync or async).
    ``dispatcher`` is an optional SubagentDispatcher used for all-files queries.
    """

    def __init__(
        self,
        cache: ContextCache,
        search: Any,
        backend: Backend,
        dispatcher: Optional[Any] = None,
        telemetry: Optional[ContextTelemetry] = None,
        cache_enabled: bool = True,
        max_sources: int = 10,
        token_counter: Callable[[str], int] = estimate_tokens,
    ):
        self.cache = cache
        self.search = search
        self.backend = backend
        self.dispatcher = dispatcher
        self.telemetry = telemetry
        self.cache_enabled = cache_enabled
        self.max_sources = max_sources
        self.count_tokens = token_counter
        self.snippets = SnippetBuilder(backend, token_counter)

    async def gather(self, request: ContextRequest) -> ContextBundle:
        start = time.monotonic()
        intent = request.intent or detect_intent(request.query)

        if self.dispatcher is not None:
            tasks = await self._detect_parallel_tasks(request)
            if tasks:
                return await self._gather_with_subagents(tasks, start)

        budget = request.budget.available
        bundle = ContextBundle(metadata=ContextMetadata(strategy="agentic-search"))
        meta = bundle.metadata
        seen: Set[str] = set()
        tokens = 0

        if request.priority_files:
            meta.strategy = "priority"
            for path in request.priority_files:
                if tokens >= budget:
                    break
                source = await self._read_source(path, "priority", meta)
                if source is None or source.path in seen:
                    continue
                seen.add(source.path)
                bundle.sources.append(source)
                tokens += source.tokens

        if tokens < budget:
            keywords = extract_keywords(request.query)
            if keywords:
                paths = await self._search_paths(" ".join(keywords), request, meta)
                meta.files_scanned += len(paths)
                for path in paths:
                    if tokens >= budget:
                        break
                    if self.backend.resolve_path(path) in seen:
                        continue
                    source = await self._read_source(path, "agentic-search", meta)
                    if source is None:
                        continue
                    if tokens + source.tokens > budget:
                        source = self._compress(source)
                    seen.add(source.path)
                    bundle.sources.append(source)
                    tokens += source.tokens

        meta.files_read = len(bundle.sources)
        meta.tokens_used = tokens
        if tokens > budget:
            meta.budget_exceeded = True
            meta.warnings.append(f"Token budget exceeded: {tokens} > {budget}")
        meta.duration = time.monotonic() - start

        logger.info(
            f"Gathered {len(bundle.sources)} sources ({tokens}/{budget} tokens, intent={intent}, "
            f"hits={meta.cache_hits}, misses={meta.cache_misses})"
        )
        if self.telemetry is not None:
            self.telemetry.record("gather", meta.duration, tokens,
                                  cache_hit=meta.cache_hits > 0, strategy=meta.strategy)
        return bundle

    async def _search_paths(self, query: str, request: ContextRequest, meta: ContextMetadata,
                            search_type: str = "both", max_results: Optional[int] = None) -> List[str]:
        options = {
            "search_type": search_type,
            "max_results": max_results or self.max_sources,
            "exclude_pattern": ",".join(request.exclude_patterns) or None,
        }
        try:
            output = self.search.search(query, options)
            if inspect.isawaitable(output):
                output = await output
        except Exception as e:
            logger.warning(f"Context search failed for {query!r}: {e}")
            meta.warnings.append(f"Search failed: {e}")
            return []
        return parse_search_results(output)[:options["max_results"]]

    async def _read_source(self, path: str, strategy: str, meta: ContextMetadata) -> Optional[ContextSource]:
        resolved = self.backend.resolve_path(path)
        if self.cache_enabled:
            cached = self.cache.get(resolved)
            if cached is not None:
                meta.cache_hits += 1
                return cached
            meta.cache_misses += 1

        loop = asyncio.get_running_loop()
        try:
            content = await loop.run_in_executor(None, self._read_text, resolved)
        except (OSError, ValueError) as e:
            logger.debug(f"Skipping unreadable context file {path}: {e}")
            return None
        if content is None:
            return None

        source = ContextSource(
            path=resolved,
            content=content,
            type="file",
            tokens=self.count_tokens(content),
            metadata={"strategy": strategy, "fetched_at": time.time(), "display_path": path},
        )
        if self.cache_enabled:
            self.cache.set(source)
        return source

    def _compress(self, source: ContextSource) -> ContextSource:
        """Swap a search hit that would overflow the budget for its declaration snippet."""
        display = source.metadata.get("display_path") or source.path
        built = self.snippets.build_from_content(display, source.content)
        if built.line_range is None or built.tokens >= source.tokens:
            return source
        snippet = ContextSource(
            path=source.path,
            content=built.snippet,
            type="snippet",
            tokens=built.tokens,
            line_range=built.line_range,
            relevance=source.relevance,
            metadata={
                **source.metadata,
                "total_lines": built.total_lines,
                "omitted_declarations": built.omitted_declarations,
                "compression_ratio": built.compression_ratio,
            },
        )
        logger.debug(f"Using snippet for {display}: {source.tokens} -> {built.tokens} tokens")
        if self.cache_enabled:
            self.cache.set(snippet)
        return snippet

    def _read_text(self, resolved: str) -> Optional[str]:
        if not self.backend.file_exists(resolved) or self.backend.is_dir(resolved):
            return None
        return self.backend.read_file(resolved)

    async def _detect_parallel_tasks(self, request: ContextRequest) -> Optional[List[Any]]:
        if not self.dispatcher.looks_parallelizable(request.query):
            return None
        keywords = extract_keywords(request.query)
        if not keywords:
            return None
        files = await self._search_paths(" ".join(keywords), request, ContextMetadata(),
                                         search_type="files", max_results=20)
        return self.dispatcher.split_task(request.query, files)

    async def _gather_with_subagents(self, tasks: List[Any], start: float) -> ContextBundle:
        logger.info(f"Delegating gather to {len(tasks)} sub-agents")
        results = await self.dispatcher.spawn_parallel(tasks)

        sources: List[ContextSource] = []
        changes: Set[str] = set()
        tokens = 0
        for i, result in enumerate(results, 1):
            sources.append(ContextSource(
                path=f"subagent-summary-{i}",
                content=result.summary,
                type="snippet",
                tokens=estimate_tokens(result.summary),
                metadata={"strategy": "subagent", "subagent": result.metadata},
            ))
            tokens += result.tokens_used
            changes.update(result.changes)

        successful = sum(1 for r in results if r.success)
        meta = ContextMetadata(
            files_scanned=sum(len(t.files) for t in tasks),
            files_read=sum(r.files_read for r in results),
            tokens_used=tokens,
            strategy="subagent",
            duration=time.monotonic() - start,
            subagent_results={
                "total": len(results),
                "successful": successful,
                "failed": len(results) - successful,
                "files_modified": len(changes),
            },
        )
        if self.telemetry is not None:
            self.telemetry.record("subagents", meta.duration, tokens, strategy="subagent")
        return ContextBundle(sources=sources, metadata=meta)
