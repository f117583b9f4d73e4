from contextlib import asynccontextmanager

import pytest

pytest.importorskip("aiosqlite")

from ctxgraph.db import Database
from ctxgraph.errors import EmptyQueryError, InvalidPattern, PatternDisabled
from ctxgraph.graph import KnowledgeGraph
from ctxgraph.parser import ParsedQuery, PatternType
from ctxgraph.search import SearchEngine, SearchOptions, escape_like, path_glob_to_like
from ctxgraph.text import trigram_similarity, trigrams

ENTITIES = [
    ("Component", "Dashboard.tsx", {}),
    ("Component", "Header.tsx", {}),
    ("Util", "Dashboard.ts", {}),
    ("Hook", "useAuth", {"path": "src/hooks/useAuth.ts", "description": "session hook"}),
    ("Component", "LoginForm", {"description": "Handles authentication"}),
    ("Config", "100%_done", {}),
    ("Config", "1000", {}),
]


@asynccontextmanager
async def _graph(tmp_path, entities=ENTITIES, **engine_options):
    db = Database(str(tmp_path / "kg.db"))
    await db.connect()
    try:
        graph = KnowledgeGraph(db, search_engine=SearchEngine(db, **engine_options))
        for entity_type, name, data in entities:
            await graph.create_entity(entity_type, name, data)
        yield graph
    finally:
        await db.disconnect()


def _names(results):
    return [r["original_name"] for r in results]


def test_like_helpers():
    assert escape_like("100%_a\\b") == "100\\%\\_a\\\\b"
    assert path_glob_to_like("src/*") == "src/%"
    assert path_glob_to_like("*/index.ts") == "%/index.ts"
    assert path_glob_to_like("src/app.ts") == "src/app.ts"


class TestPatterns:
    @pytest.mark.asyncio
    async def test_exact_is_case_insensitive_by_default(self, tmp_path):
        async with _graph(tmp_path) as graph:
            assert _names(await graph.search('"dashboard.tsx"')) == ["Dashboard.tsx"]
            sensitive = SearchOptions(case_sensitive=True)
            assert await graph.search('"dashboard.tsx"', sensitive) == []
            assert _names(await graph.search('"Dashboard.tsx"', sensitive)) == ["Dashboard.tsx"]

    @pytest.mark.asyncio
    async def test_prefix_suffix_contains(self, tmp_path):
        async with _graph(tmp_path) as graph:
            assert _names(await graph.search("Dash*")) == ["Dashboard.ts", "Dashboard.tsx"]
            assert _names(await graph.search("*board.ts")) == ["Dashboard.ts"]
            assert _names(await graph.search("*board*")) == ["Dashboard.ts", "Dashboard.tsx"]

    @pytest.mark.asyncio
    async def test_case_sensitive_name_patterns(self, tmp_path):
        async with _graph(tmp_path) as graph:
            sensitive = SearchOptions(case_sensitive=True)
            assert await graph.search("dash*", sensitive) == []
            assert _names(await graph.search("Dash*", sensitive)) == ["Dashboard.ts", "Dashboard.tsx"]

    @pytest.mark.asyncio
    async def test_like_metacharacters_are_literal(self, tmp_path):
        async with _graph(tmp_path) as graph:
            assert _names(await graph.search("100%*")) == ["100%_done"]

    @pytest.mark.asyncio
    async def test_extension_and_type(self, tmp_path):
        async with _graph(tmp_path) as graph:
            assert set(_names(await graph.search("*.ts"))) == {"useAuth", "Dashboard.ts"}
            assert _names(await graph.search("*.TSX")) == ["Header.tsx", "Dashboard.tsx"]
            assert _names(await graph.search("t:Util")) == ["Dashboard.ts"]

    @pytest.mark.asyncio
    async def test_path_patterns(self, tmp_path):
        async with _graph(tmp_path) as graph:
            assert _names(await graph.search("src/hooks/*")) == ["useAuth"]
            assert _names(await graph.search("*/useAuth.ts")) == ["useAuth"]
            assert _names(await graph.search("src/hooks/useAuth.ts")) == ["useAuth"]
            assert await graph.search("src/hooks") == []

    @pytest.mark.asyncio
    async def test_text_relevance_tiers(self, tmp_path):
        async with _graph(tmp_path) as graph:
            results = await graph.search("auth")
            assert _names(results) == ["useAuth", "LoginForm"]
            assert [r["relevance_score"] for r in results] == [2, 1]

            results = await graph.search("dashboard")
            assert {r["relevance_score"] for r in results} == {3}

    @pytest.mark.asyncio
    async def test_wildcard_limit_and_offset(self, tmp_path):
        async with _graph(tmp_path) as graph:
            everything = await graph.search("*")
            assert len(everything) == len(ENTITIES)
            page = await graph.search("*", SearchOptions(limit=2, offset=1))
            assert _names(page) == _names(everything)[1:3]

    @pytest.mark.asyncio
    async def test_inner_wildcard_matches_everything(self, tmp_path):
        async with _graph(tmp_path) as graph:
            assert len(await graph.search("Da*rd")) == len(ENTITIES)

    @pytest.mark.asyncio
    async def test_limit_is_capped_by_max_results(self, tmp_path):
        async with _graph(tmp_path, max_results=3) as graph:
            assert len(await graph.search("*", SearchOptions(limit=100))) == 3

    @pytest.mark.asyncio
    async def test_empty_query(self, tmp_path):
        async with _graph(tmp_path) as graph:
            with pytest.raises(EmptyQueryError):
                await graph.search("   ")


class TestComposite:
    @pytest.mark.asyncio
    async def test_intersection(self, tmp_path):
        async with _graph(tmp_path) as graph:
            results = await graph.search("t:Component *.tsx")
            assert set(_names(results)) == {"Header.tsx", "Dashboard.tsx"}

            results = await graph.search("t:Component *.tsx Dash*")
            assert _names(results) == ["Dashboard.tsx"]

    @pytest.mark.asyncio
    async def test_filter_order_does_not_change_membership(self, tmp_path):
        async with _graph(tmp_path) as graph:
            a = await graph.search("Dash* t:Component")
            b = await graph.search("t:Component Dash*")
            assert {r["entity_id"] for r in a} == {r["entity_id"] for r in b}

    @pytest.mark.asyncio
    async def test_three_entity_example(self, tmp_path):
        entities = [
            ("Component", "Dashboard.tsx", {}),
            ("Component", "Header.tsx", {}),
            ("Util", "Dashboard.ts", {}),
        ]
        async with _graph(tmp_path, entities=entities) as graph:
            results = await graph.search("t:Component *.tsx Dashboard*")
            assert _names(results) == ["Dashboard.tsx"]
            results = await graph.search("*.tsx Dashboard*")
            assert _names(results) == ["Dashboard.tsx"]


class TestFuzzy:
    @pytest.mark.asyncio
    async def test_threshold_boundary_is_inclusive(self, tmp_path):
        score = trigram_similarity(trigrams("dashboard"), trigrams("dashbord"))
        entities = [("Component", "dashboard", {})]
        async with _graph(tmp_path, entities=entities, fuzzy_threshold=score) as graph:
            results = await graph.search("~dashbord")
            assert _names(results) == ["dashboard"]
            assert results[0]["similarity_score"] == pytest.approx(score)

            graph.search_engine.fuzzy_threshold = score + 1e-9
            assert await graph.search("~dashbord") == []

    @pytest.mark.asyncio
    async def test_results_ordered_by_score(self, tmp_path):
        entities = [("Component", "dashboard", {}), ("Component", "dashboards", {})]
        async with _graph(tmp_path, entities=entities, fuzzy_threshold=0.1) as graph:
            results = await graph.search("~dashboard")
            assert results[0]["original_name"] == "dashboard"
            assert results[0]["similarity_score"] == 1.0

    @pytest.mark.asyncio
    async def test_disabled_raises(self, tmp_path):
        async with _graph(tmp_path, enable_fuzzy_search=False) as graph:
            with pytest.raises(PatternDisabled):
                await graph.search("~dashbord")


class TestRegex:
    @pytest.mark.asyncio
    async def test_flags(self, tmp_path):
        async with _graph(tmp_path) as graph:
            assert _names(await graph.search("/^Dash/")) == ["Dashboard.ts", "Dashboard.tsx"]
            assert await graph.search("/^dash/") == []
            assert _names(await graph.search("/^dash/i")) == ["Dashboard.ts", "Dashboard.tsx"]

    @pytest.mark.asyncio
    async def test_disabled_raises(self, tmp_path):
        async with _graph(tmp_path, enable_regex_search=False) as graph:
            with pytest.raises(PatternDisabled):
                await graph.search("/foo/")

    @pytest.mark.asyncio
    async def test_invalid_pattern_raises_when_executed_directly(self, tmp_path):
        async with _graph(tmp_path) as graph:
            with pytest.raises(InvalidPattern):
                await graph.search_engine.execute(ParsedQuery(PatternType.REGEX, "("))


class TestDiagnostics:
    @pytest.mark.asyncio
    async def test_stats_track_queries(self, tmp_path):
        async with _graph(tmp_path, slow_query_ms=0) as graph:
            engine = graph.search_engine
            await graph.search("Dash*")
            await graph.search("Head*")
            await graph.search("t:Util")

            stats = engine.get_stats()
            assert stats["total_queries"] == 3
            assert stats["average_query_time_ms"] > 0
            assert stats["popular_query_types"][0] == {"type": "prefix", "count": 2}
            assert len(stats["slow_queries"]) == 3

            engine.reset_stats()
            assert engine.get_stats()["total_queries"] == 0

    @pytest.mark.asyncio
    async def test_execute_does_not_record(self, tmp_path):
        async with _graph(tmp_path) as graph:
            await graph.search_engine.execute(ParsedQuery(PatternType.WILDCARD, "*"))
            assert graph.search_engine.get_stats()["total_queries"] == 0

    @pytest.mark.asyncio
    async def test_explain_query(self, tmp_path):
        async with _graph(tmp_path) as graph:
            explained = await graph.search_engine.explain_query("t:Component *.tsx")
            assert explained["parsed_query"]["type"] == "composite"
            assert [f["type"] for f in explained["parsed_query"]["filters"]] == ["type", "extension"]
            assert explained["pattern_info"]["performance"] == "medium"
            assert explained["estimated_results"] == 2
            assert explained["errors"] == []

    @pytest.mark.asyncio
    async def test_explain_reports_disabled_pattern(self, tmp_path):
        async with _graph(tmp_path, enable_fuzzy_search=False) as graph:
            explained = await graph.search_engine.explain_query("~dash")
            assert explained["estimated_results"] is None
            assert explained["errors"] == ["Fuzzy search is disabled"]
