"""
Bounded, time-expiring cache of context sources.

Entries are keyed by normalized absolute path, optionally suffixed with a
``:start-end`` line-range tag. A watchdog observer invalidates entries when
files change on disk; invalidation cascades through registered importers.
"""

import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from context.types import CacheEntry, ContextSource, LineRange
from tools.gitignore import in_skipped_tree, invalidate_gitignore_cache

logger = logging.getLogger(__name__)


def normalize_path(path: str) -> str:
    return os.path.normpath(os.path.abspath(path))


class _InvalidationHandler(FileSystemEventHandler):
    """Forwards change/delete events for files outside build/vendor trees."""

    def __init__(self, cache: "ContextCache"):
        super().__init__()
        self.cache = cache

    def _handle(self, path: Any) -> None:
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        if not path or in_skipped_tree(path):
            return
        if os.path.basename(path) == ".gitignore":
            invalidate_gitignore_cache(os.path.dirname(os.path.abspath(path)))
        self.cache.invalidate_file(path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle(event.src_path)


class ContextCache:
    """LRU + TTL cache for ContextSource objects.

    Mutations take a lock, so the watcher thread may invalidate while the
    orchestrator reads.
    """

    def __init__(
        self,
        max_entries: int = 100,
        ttl: float = 300.0,
        watch_paths: Optional[Iterable[str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self.ttl = ttl
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._importers: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()
        self._gets = 0
        self._hits = 0
        self._tokens_saved = 0
        self._observer: Optional[Any] = None
        self.watch_error: Optional[str] = None
        if watch_paths:
            self.start_watching(watch_paths)

    # ── keys ────────────────────────────────────────────────

    @staticmethod
    def make_key(path: str, line_range: Optional[LineRange] = None) -> str:
        key = normalize_path(path)
        if line_range:
            key += f":{line_range[0]}-{line_range[1]}"
        return key

    # ── read / write ────────────────────────────────────────

    def get(self, path: str, line_range: Optional[LineRange] = None) -> Optional[ContextSource]:
        """Return a copy of the cached source marked from_cache, or None on miss/expiry."""
        key = self.make_key(path, line_range)
        with self._lock:
            self._gets += 1
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(self._clock()):
                del self._entries[key]
                return None
            entry.hits += 1
            self._entries.move_to_end(key)
            self._hits += 1
            self._tokens_saved += entry.source.tokens
            return replace(entry.source, from_cache=True)

    def set(self, source: ContextSource, ttl: Optional[float] = None) -> None:
        key = self.make_key(source.path, source.line_range)
        entry = CacheEntry(
            source=replace(source, from_cache=False),
            cached_at=self._clock(),
            ttl=self.ttl if ttl is None else ttl,
        )
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Context cache evicted {evicted}")

    def has(self, path: str, line_range: Optional[LineRange] = None) -> bool:
        key = self.make_key(path, line_range)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.expired(self._clock()):
                del self._entries[key]
                return False
            return True

    # ── invalidation ────────────────────────────────────────

    def register_dependency(self, importer: str, imported: str) -> None:
        """Record that ``importer`` depends on ``imported``."""
        with self._lock:
            self._importers.setdefault(normalize_path(imported), set()).add(normalize_path(importer))

    def invalidate_file(self, path: str) -> int:
        """Drop every cached variant of path, then cascade to its importers. Returns entries removed."""
        removed = 0
        pending = [normalize_path(path)]
        seen: Set[str] = set()
        with self._lock:
            while pending:
                current = pending.pop()
                if current in seen:
                    continue
                seen.add(current)
                prefix = current + ":"
                stale = [k for k in self._entries if k == current or k.startswith(prefix)]
                for key in stale:
                    del self._entries[key]
                removed += len(stale)
                pending.extend(self._importers.get(current, ()))
        if removed:
            logger.debug(f"Invalidated {removed} cache entries for {path}")
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._importers.clear()

    # ── observability ───────────────────────────────────────

    @property
    def watching(self) -> bool:
        return self._observer is not None

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            misses = self._gets - self._hits
            return {
                "gets": self._gets,
                "hits": self._hits,
                "misses": misses,
                "hit_rate": self._hits / self._gets if self._gets else 0.0,
                "size": len(self._entries),
                "max_size": self.max_entries,
                "tokens_saved": self._tokens_saved,
                "watching": self.watching,
                "watch_error": self.watch_error,
            }

    def reset_stats(self) -> None:
        with self._lock:
            self._gets = 0
            self._hits = 0
            self._tokens_saved = 0

    def cached_paths(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    # ── filesystem watching ─────────────────────────────────

    def start_watching(self, paths: Iterable[str]) -> bool:
        """Watch directories for changes. On failure the cache keeps working unwatched."""
        observer = Observer()
        handler = _InvalidationHandler(self)
        try:
            for path in paths:
                full = normalize_path(path)
                if not os.path.isdir(full):
                    raise FileNotFoundError(f"Watch path is not a directory: {full}")
                observer.schedule(handler, full, recursive=True)
            observer.daemon = True
            observer.start()
        except Exception as e:
            self.watch_error = str(e)
            self._observer = None
            logger.warning(f"File watcher unavailable, cache auto-invalidation disabled: {e}")
            return False
        self._observer = observer
        self.watch_error = None
        logger.info(f"Context cache watching {list(paths)}")
        return True

    def dispose(self) -> None:
        """Stop the watcher and drop all entries."""
        observer = self._observer
        self._observer = None
        if observer is not None:
            observer.stop()
            observer.join(timeout=2)
        self.clear()
