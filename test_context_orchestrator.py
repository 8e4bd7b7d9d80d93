"""Tests for the gather phase."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest

from backend import LocalBackend
from conftest import FakeSearch
from context.budget import TokenBudget
from context.cache import ContextCache
from context.orchestrator import (
    ContextOrchestrator,
    compact,
    detect_intent,
    extract_keywords,
    format_bundle,
    parse_search_results,
)
from context.telemetry import ContextTelemetry
from context.types import ContextBundle, ContextMetadata, ContextRequest, ContextSource
from tools.search_ops import FileSearch


def _budget(available: int) -> TokenBudget:
    return TokenBudget(max_tokens=available * 2, reserved_fraction=0.5)


@pytest.fixture
def project(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "index.ts").write_text("x" * 2800)  # 800 tokens
    for name in ("one.py", "two.py", "three.py"):
        (tmp_path / "src" / name).write_text("y" * 1400)  # 400 tokens each
    return tmp_path


# ── helpers ─────────────────────────────────────────────────

def test_extract_keywords_drops_stop_and_action_words():
    assert extract_keywords("Explain how the cache works!") == ["cache", "works"]
    assert extract_keywords("Explique comment le cache fonctionne") == ["cache", "fonctionne"]


def test_extract_keywords_keeps_action_words_when_nothing_else_remains():
    assert extract_keywords("explain, show me") == ["explain", "show"]


def test_extract_keywords_deduplicates_in_order():
    assert extract_keywords("cache cache parser Cache") == ["cache", "parser"]


def test_parse_search_results_handles_every_format():
    output = "\n".join([
        'Search results for "cache":',
        "Found: 5 files",
        "src/cache.py (3 matches)",
        "src/util.ts:12:  const x = 1",
        '{"file": "lib/data.json"}',
        "docs/readme.md",
        "src/cache.py (1 match)",
        "",
        "nothing useful here",
    ])
    assert parse_search_results(output) == ["src/cache.py", "src/util.ts", "lib/data.json", "docs/readme.md"]


def test_parse_search_results_empty():
    assert parse_search_results("") == []
    assert parse_search_results("No matches found for: cache") == []


@pytest.mark.parametrize("query, intent", [
    ("explain the parser", "explain"),
    ("refactor the cache module", "refactor"),
    ("fix the failing build", "debug"),
    ("implement a new command", "implement"),
    ("where is the config loaded", "search"),
    ("hello there", "general"),
])
def test_detect_intent(query, intent):
    assert detect_intent(query) == intent


def test_compact_keeps_system_messages_and_recent_tail():
    history = [{"role": "system", "content": "s"}] + [
        {"role": "user" if i % 2 else "assistant", "content": str(i)} for i in range(30)
    ]
    compacted = compact(history, keep=5)
    assert compacted[0]["role"] == "system"
    assert [m["content"] for m in compacted[1:]] == ["25", "26", "27", "28", "29"]


def test_format_bundle():
    bundle = ContextBundle(
        sources=[ContextSource(path="/w/src/a.py", content="print(1)", tokens=2, line_range=(1, 1),
                               metadata={"display_path": "src/a.py"})],
        metadata=ContextMetadata(tokens_used=2, cache_hits=1),
    )
    text = format_bundle(bundle, "/w")
    assert text.startswith("=== RELEVANT CONTEXT ===")
    assert "Strategy: agentic-search" in text
    assert "Cache hits: 1" in text
    assert "--- src/a.py ---" in text
    assert "Lines: 1-1" in text
    assert "print(1)" in text
    assert text.endswith("=== END CONTEXT ===")
    assert format_bundle(ContextBundle()) == ""


# ── gather ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_first_gather_reads_and_caches_then_repeat_hits_cache(project):
    backend = LocalBackend(str(project))
    cache = ContextCache()
    search = FakeSearch("Search results for \"src index\":\nFound: 1 files\nsrc/index.ts (3 matches)")
    orchestrator = ContextOrchestrator(cache, search, backend)
    request = ContextRequest(query="explain src/index.ts", budget=_budget(5000))

    bundle = await orchestrator.gather(request)
    assert len(bundle.sources) == 1
    source = bundle.sources[0]
    assert source.tokens == 800
    assert not source.from_cache
    assert source.metadata["display_path"] == "src/index.ts"
    assert bundle.metadata.cache_hits == 0
    assert bundle.metadata.cache_misses == 1
    assert bundle.metadata.tokens_used == 800
    assert not bundle.metadata.budget_exceeded
    assert cache.has(str(project / "src" / "index.ts"))
    assert search.queries[0][0] == "src index"

    again = await orchestrator.gather(request)
    assert len(again.sources) == 1
    assert again.sources[0].from_cache
    assert again.metadata.cache_hits == 1


@pytest.mark.asyncio
async def test_gather_stops_once_budget_is_met_and_flags_overshoot(project):
    backend = LocalBackend(str(project))
    search = FakeSearch("src/one.py (2 matches)\nsrc/two.py (2 matches)\nsrc/three.py (1 match)")
    orchestrator = ContextOrchestrator(ContextCache(), search, backend)

    bundle = await orchestrator.gather(ContextRequest(query="module loading", budget=_budget(500)))

    assert [s.metadata["display_path"] for s in bundle.sources] == ["src/one.py", "src/two.py"]
    assert bundle.metadata.tokens_used == 800
    assert bundle.metadata.budget_exceeded
    assert bundle.metadata.warnings == ["Token budget exceeded: 800 > 500"]
    assert bundle.metadata.files_scanned == 3


@pytest.mark.asyncio
async def test_search_hits_over_budget_arrive_as_snippets(tmp_path):
    body = "\n".join(f"    total += weight({i}) * value" for i in range(12))
    (tmp_path / "scoring.py").write_text("\n\n".join(
        f"def score_{n}(value):\n    total = 0\n{body}\n    return total\n" for n in range(6)
    ))
    cache = ContextCache()
    orchestrator = ContextOrchestrator(cache, FakeSearch("scoring.py (6 matches)"), LocalBackend(str(tmp_path)))

    bundle = await orchestrator.gather(ContextRequest(query="scoring weights", budget=_budget(300)))

    source = bundle.sources[0]
    assert source.type == "snippet"
    assert source.tokens < 300
    assert "def score_5(value):" in source.content
    assert "weight(" not in source.content
    assert source.line_range[0] == 1
    assert not bundle.metadata.budget_exceeded
    path = str(tmp_path / "scoring.py")
    assert cache.has(path)
    assert cache.has(path, source.line_range)

    cache.invalidate_file(path)
    assert not cache.has(path, source.line_range)


@pytest.mark.asyncio
async def test_priority_files_come_first_and_are_not_duplicated(project):
    backend = LocalBackend(str(project))
    search = FakeSearch("src/two.py (4 matches)\nsrc/one.py (1 match)")
    orchestrator = ContextOrchestrator(ContextCache(), search, backend)

    request = ContextRequest(query="module loading", budget=_budget(5000), priority_files=["src/one.py"])
    bundle = await orchestrator.gather(request)

    assert [s.metadata["display_path"] for s in bundle.sources] == ["src/one.py", "src/two.py"]
    assert bundle.metadata.strategy == "priority"


@pytest.mark.asyncio
async def test_zero_budget_reads_nothing(project):
    search = FakeSearch("src/one.py (2 matches)")
    orchestrator = ContextOrchestrator(ContextCache(), search, LocalBackend(str(project)))
    bundle = await orchestrator.gather(ContextRequest(query="module loading", budget=_budget(0)))
    assert bundle.is_empty
    assert search.queries == []


@pytest.mark.asyncio
async def test_missing_and_unreadable_paths_are_skipped(project):
    search = FakeSearch("src/gone.py (2 matches)\n../outside.py (1 match)\nsrc/one.py (1 match)")
    orchestrator = ContextOrchestrator(ContextCache(), search, LocalBackend(str(project)))
    bundle = await orchestrator.gather(ContextRequest(query="module loading", budget=_budget(5000)))
    assert [s.metadata["display_path"] for s in bundle.sources] == ["src/one.py"]


@pytest.mark.asyncio
async def test_search_failure_yields_empty_bundle_with_warning(project):
    search = FakeSearch(error=RuntimeError("rg not installed"))
    orchestrator = ContextOrchestrator(ContextCache(), search, LocalBackend(str(project)))
    bundle = await orchestrator.gather(ContextRequest(query="module loading", budget=_budget(5000)))
    assert bundle.is_empty
    assert bundle.metadata.warnings == ["Search failed: rg not installed"]


@pytest.mark.asyncio
async def test_cache_disabled_always_reads_disk(project):
    cache = ContextCache()
    search = FakeSearch("src/one.py (1 match)")
    orchestrator = ContextOrchestrator(cache, search, LocalBackend(str(project)), cache_enabled=False)
    request = ContextRequest(query="module loading", budget=_budget(5000))
    await orchestrator.gather(request)
    bundle = await orchestrator.gather(request)
    assert not bundle.sources[0].from_cache
    assert cache.stats()["size"] == 0


@pytest.mark.asyncio
async def test_gather_against_real_search(workspace, backend):
    orchestrator = ContextOrchestrator(ContextCache(), FileSearch(backend), backend)
    bundle = await orchestrator.gather(ContextRequest(query="where is cache_get defined", budget=_budget(5000)))
    assert "src/cache_utils.py" in [s.metadata["display_path"] for s in bundle.sources]


@pytest.mark.asyncio
async def test_all_files_queries_are_delegated_to_subagents(project):
    telemetry = ContextTelemetry()
    tasks = [SimpleNamespace(files=["src/one.py", "src/two.py"]), SimpleNamespace(files=["src/three.py"])]
    results = [
        SimpleNamespace(summary="Updated one and two", tokens_used=120, changes=["src/one.py", "src/two.py"],
                        success=True, files_read=2, metadata={"tools_used": 4}),
        SimpleNamespace(summary="Subagent failed: timed out after 60s", tokens_used=0, changes=[],
                        success=False, files_read=0, metadata={"tools_used": 0}),
    ]
    dispatcher = Mock()
    dispatcher.looks_parallelizable.return_value = True
    dispatcher.split_task.return_value = tasks
    dispatcher.spawn_parallel = AsyncMock(return_value=results)
    search = FakeSearch("src/one.py (1 match)\nsrc/two.py (1 match)\nsrc/three.py (1 match)")

    orchestrator = ContextOrchestrator(ContextCache(), search, LocalBackend(str(project)),
                                       dispatcher=dispatcher, telemetry=telemetry)
    bundle = await orchestrator.gather(ContextRequest(query="add type hints to all python files",
                                                      budget=_budget(5000)))

    dispatcher.split_task.assert_called_once_with(
        "add type hints to all python files", ["src/one.py", "src/two.py", "src/three.py"])
    assert search.queries[0][1]["search_type"] == "files"
    assert bundle.metadata.strategy == "subagent"
    assert [s.content for s in bundle.sources] == [r.summary for r in results]
    assert bundle.metadata.subagent_results == {"total": 2, "successful": 1, "failed": 1, "files_modified": 2}
    assert bundle.metadata.tokens_used == 120
    assert telemetry.snapshot()["operation_breakdown"] == {"subagents": 1}


@pytest.mark.asyncio
async def test_non_parallel_queries_skip_the_dispatcher(project):
    dispatcher = Mock()
    dispatcher.looks_parallelizable.return_value = False
    search = FakeSearch("src/one.py (1 match)")
    orchestrator = ContextOrchestrator(ContextCache(), search, LocalBackend(str(project)), dispatcher=dispatcher)
    bundle = await orchestrator.gather(ContextRequest(query="module loading", budget=_budget(5000)))
    dispatcher.split_task.assert_not_called()
    assert bundle.metadata.strategy == "agentic-search"
