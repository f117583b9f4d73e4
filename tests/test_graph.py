from contextlib import asynccontextmanager

import pytest

pytest.importorskip("aiosqlite")

from ctxgraph.config import CtxGraphConfig
from ctxgraph.db import Database
from ctxgraph.errors import NotFoundError, QueryError
from ctxgraph.graph import KnowledgeGraph


@asynccontextmanager
async def _graph(tmp_path, **kwargs):
    db = Database(str(tmp_path / "kg.db"))
    await db.connect()
    try:
        yield KnowledgeGraph(db, **kwargs)
    finally:
        await db.disconnect()


async def _chain(graph, *names):
    """Create entities linked name[0] -> name[1] -> ... and return them by name."""
    entities = {}
    for name in names:
        entities[name] = await graph.create_entity("Module", name)
    for left, right in zip(names, names[1:]):
        await graph.create_relation(entities[left]["id"], entities[right]["id"], "imports")
    return entities


class TestEntities:
    @pytest.mark.asyncio
    async def test_create_and_fetch(self, tmp_path):
        async with _graph(tmp_path) as graph:
            created = await graph.create_entity("Component", "Header", {"path": "src/Header.tsx"})
            assert created["version"] == 1
            assert created["data"] == {"path": "src/Header.tsx"}

            fetched = await graph.get_entity(created["id"])
            assert fetched["name"] == "Header"
            assert (await graph.get_entity_by_name("Component", "Header"))["id"] == created["id"]
            assert await graph.get_entity("missing") is None

            row = await graph.db.statements.get_search_index_entry().get(created["id"])
            assert row["file_path"] == "src/Header.tsx"

    @pytest.mark.asyncio
    async def test_explicit_id(self, tmp_path):
        async with _graph(tmp_path) as graph:
            created = await graph.create_entity("Component", "Header", entity_id="header-1")
            assert created["id"] == "header-1"
            with pytest.raises(QueryError) as excinfo:
                await graph.create_entity("Component", "Other", entity_id="header-1")
            assert excinfo.value.code == "CONSTRAINT_ERROR"

    @pytest.mark.asyncio
    async def test_update_merges_data_and_reindexes(self, tmp_path):
        async with _graph(tmp_path) as graph:
            created = await graph.create_entity("Component", "Header", {"a": 1, "b": 2})
            updated = await graph.update_entity(created["id"], name="Footer", data={"b": 3, "path": "src/Footer.vue"})

            assert updated["name"] == "Footer"
            assert updated["type"] == "Component"
            assert updated["data"] == {"a": 1, "b": 3, "path": "src/Footer.vue"}
            assert updated["version"] == 2
            assert updated["updated_at"] > created["updated_at"]

            assert [r["entity_id"] for r in await graph.search('"footer"')] == [created["id"]]
            assert await graph.search('"header"') == []
            assert [r["entity_id"] for r in await graph.search("*.vue")] == [created["id"]]

    @pytest.mark.asyncio
    async def test_update_and_delete_missing(self, tmp_path):
        async with _graph(tmp_path) as graph:
            with pytest.raises(NotFoundError):
                await graph.update_entity("missing", name="x")
            with pytest.raises(NotFoundError):
                await graph.delete_entity("missing")

    @pytest.mark.asyncio
    async def test_delete_cascades_to_relations_and_index(self, tmp_path):
        async with _graph(tmp_path) as graph:
            entities = await _chain(graph, "a", "b", "c")
            b_id = entities["b"]["id"]

            await graph.delete_entity(b_id)

            assert await graph.get_entity(b_id) is None
            assert await graph.get_entity_relations(entities["a"]["id"]) == []
            assert await graph.get_entity_relations(entities["c"]["id"]) == []
            assert await graph.db.statements.get_search_index_entry().get(b_id) is None
            assert await graph.search('"b"') == []

    @pytest.mark.asyncio
    async def test_list_and_count(self, tmp_path):
        async with _graph(tmp_path) as graph:
            for name in ("Charlie", "alpha", "Bravo"):
                await graph.create_entity("Component", name)
            await graph.create_entity("Util", "alphabet")

            listed = await graph.list_entities(entity_type="Component")
            assert [e["name"] for e in listed] == ["Bravo", "Charlie", "alpha"]
            page = await graph.list_entities(entity_type="Component", limit=1, offset=1)
            assert [e["name"] for e in page] == ["Charlie"]

            contains = await graph.list_entities(name_contains="ALPHA")
            assert [e["name"] for e in contains] == ["alpha", "alphabet"]
            assert await graph.list_entities(name_contains="%") == []

            assert await graph.count_entities() == 4
            assert await graph.count_entities("Component") == 3

            ids = [e["id"] for e in listed]
            assert {e["name"] for e in await graph.get_entities(ids)} == {"Bravo", "Charlie", "alpha"}
            assert await graph.get_entities([]) == []

    @pytest.mark.asyncio
    async def test_indexing_can_be_deferred(self, tmp_path):
        async with _graph(tmp_path, enable_indexing=False) as graph:
            created = await graph.create_entity("Component", "Header", {"path": "src/Header.tsx"})
            row = await graph.db.statements.get_search_index_entry().get(created["id"])
            assert row["file_path"] is None

            stats = await graph.rebuild_search_index()
            assert stats.created == 1
            row = await graph.db.statements.get_search_index_entry().get(created["id"])
            assert row["file_path"] == "src/Header.tsx"


class TestRelations:
    @pytest.mark.asyncio
    async def test_create_and_query_by_direction(self, tmp_path):
        async with _graph(tmp_path) as graph:
            entities = await _chain(graph, "a", "b", "c")
            a, b, c = (entities[n]["id"] for n in "abc")

            outgoing = await graph.get_entity_relations(b, "outgoing")
            incoming = await graph.get_entity_relations(b, "incoming")
            both = await graph.get_entity_relations(b)
            assert [r["to_id"] for r in outgoing] == [c]
            assert [r["from_id"] for r in incoming] == [a]
            assert len(both) == 2
            assert all(r["properties"] == {} for r in both)

            assert len(await graph.get_relations_by_type("imports")) == 2
            with pytest.raises(ValueError):
                await graph.get_entity_relations(b, "sideways")

    @pytest.mark.asyncio
    async def test_properties_and_delete(self, tmp_path):
        async with _graph(tmp_path) as graph:
            a = await graph.create_entity("Module", "a")
            b = await graph.create_entity("Module", "b")
            relation = await graph.create_relation(a["id"], b["id"], "calls", {"weight": 2})
            assert (await graph.get_relation(relation["id"]))["properties"] == {"weight": 2}

            await graph.delete_relation(relation["id"])
            assert await graph.get_relation(relation["id"]) is None
            with pytest.raises(NotFoundError):
                await graph.delete_relation(relation["id"])

    @pytest.mark.asyncio
    async def test_self_and_dangling_edges_rejected(self, tmp_path):
        async with _graph(tmp_path) as graph:
            a = await graph.create_entity("Module", "a")
            with pytest.raises(QueryError) as excinfo:
                await graph.create_relation(a["id"], a["id"], "self")
            assert excinfo.value.code == "CONSTRAINT_ERROR"
            with pytest.raises(QueryError):
                await graph.create_relation(a["id"], "missing", "calls")


class TestTraversal:
    @pytest.mark.asyncio
    async def test_find_connected_respects_depth(self, tmp_path):
        async with _graph(tmp_path) as graph:
            entities = await _chain(graph, "a", "b", "c", "d")
            found = await graph.find_connected(entities["a"]["id"], max_depth=2)
            assert [(e["name"], e["depth"]) for e in found] == [("a", 0), ("b", 1), ("c", 2)]

            from_middle = await graph.find_connected(entities["c"]["id"], max_depth=1)
            assert [(e["name"], e["depth"]) for e in from_middle] == [("c", 0), ("b", 1), ("d", 1)]

    @pytest.mark.asyncio
    async def test_cycles_terminate(self, tmp_path):
        async with _graph(tmp_path) as graph:
            entities = await _chain(graph, "a", "b", "c")
            await graph.create_relation(entities["c"]["id"], entities["a"]["id"], "imports")
            found = await graph.find_connected(entities["a"]["id"], max_depth=5)
            assert sorted(e["name"] for e in found) == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_neighbors_are_tagged_with_direction(self, tmp_path):
        async with _graph(tmp_path) as graph:
            entities = await _chain(graph, "a", "b", "c")
            neighbors = await graph.get_neighbors(entities["b"]["id"])
            assert [(n["name"], n["direction"], n["relation_type"]) for n in neighbors] == [
                ("a", "incoming", "imports"),
                ("c", "outgoing", "imports"),
            ]


@pytest.mark.asyncio
async def test_stats(tmp_path):
    async with _graph(tmp_path) as graph:
        await _chain(graph, "a", "b", "c")
        await graph.create_entity("Component", "Header")
        stats = await graph.get_stats()
        assert stats["entities"] == 4
        assert stats["relations"] == 2
        assert stats["index_size"] == 4
        assert stats["avg_entity_connections"] == 1.0
        assert stats["entities_by_type"] == {"Module": 3, "Component": 1}
        assert stats["relations_by_type"] == {"imports": 2}


@pytest.mark.asyncio
async def test_open_from_config(tmp_path):
    cfg = CtxGraphConfig(db_path=str(tmp_path / "kg.db"), fuzzy_threshold=0.5, index_batch_size=10)
    graph = await KnowledgeGraph.open(cfg)
    try:
        assert graph.search_engine.fuzzy_threshold == 0.5
        assert graph.indexer.batch_size == 10
        await graph.create_entity("Component", "Header")
        assert await graph.count_entities() == 1
    finally:
        await graph.close()
    assert not graph.db.connected
