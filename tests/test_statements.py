import inspect
from contextlib import asynccontextmanager

import pytest

aiosqlite = pytest.importorskip("aiosqlite")

from ctxgraph.errors import QueryError
from ctxgraph.statements import Statement, StatementCache, Statements


class TestStatementCache:
    @pytest.mark.asyncio
    async def test_evicts_least_recently_used(self):
        async with aiosqlite.connect(":memory:") as conn:
            cache = StatementCache(conn, max_statements=2)
            cache.get("a", "SELECT 1")
            cache.get("b", "SELECT 2")
            cache.get("a", "SELECT 1")
            cache.get("c", "SELECT 3")

            assert len(cache) == 2
            assert "a" in cache
            assert "c" in cache
            assert "b" not in cache
            assert cache.info("a").usage_count == 2

    @pytest.mark.asyncio
    async def test_returns_cached_statement(self):
        async with aiosqlite.connect(":memory:") as conn:
            cache = StatementCache(conn)
            first = cache.get("one", "SELECT 1")
            assert cache.get("one", "SELECT 1") is first

    @pytest.mark.asyncio
    async def test_remove_clear_and_stats(self):
        async with aiosqlite.connect(":memory:") as conn:
            cache = StatementCache(conn, max_statements=5)
            cache.get("a", "SELECT 1")
            cache.get("a", "SELECT 1")
            cache.get("b", "SELECT 2")

            stats = cache.get_stats()
            assert stats["total"] == 2
            assert stats["max_capacity"] == 5
            assert stats["most_used"][0] == {"name": "a", "usage_count": 2}
            assert stats["oldest_statement"] == "a"

            assert cache.remove("a") is True
            assert cache.remove("a") is False
            cache.clear()
            assert len(cache) == 0
            assert cache.get_stats()["oldest_statement"] is None


@pytest.mark.asyncio
async def test_incomplete_sql_rejected():
    async with aiosqlite.connect(":memory:") as conn:
        with pytest.raises(QueryError) as excinfo:
            Statement(conn, "broken", "SELECT 'unterminated")
        assert excinfo.value.code == "PREPARE_ERROR"
        with pytest.raises(QueryError):
            Statement(conn, "empty", "   ")


@pytest.mark.asyncio
async def test_uncompilable_sql_fails_on_first_execution():
    async with aiosqlite.connect(":memory:") as conn:
        cache = StatementCache(conn)
        typo = cache.get("typo", "SELEC 1")
        assert "typo" in cache
        with pytest.raises(QueryError) as excinfo:
            await typo.all()
        assert excinfo.value.code == "QUERY_ERROR"


@pytest.mark.asyncio
async def test_statements_run_inside_guard():
    entered = []

    @asynccontextmanager
    async def guard():
        entered.append(True)
        yield

    async with aiosqlite.connect(":memory:") as conn:
        cache = StatementCache(conn, guard=guard)
        statement = cache.get("one", "SELECT 1 AS n")
        await statement.all()
        await statement.get()
        await statement.run()
        assert len(entered) == 3


@pytest.mark.asyncio
async def test_statement_round_trip_and_constraint_error():
    async with aiosqlite.connect(":memory:") as conn:
        conn.row_factory = aiosqlite.Row
        await conn.execute("CREATE TABLE t (id TEXT PRIMARY KEY, v INTEGER)")
        insert = Statement(conn, "insert", "INSERT INTO t (id, v) VALUES (?, ?)")
        result = await insert.run("x", 1)
        assert result.rowcount == 1

        select = Statement(conn, "select", "SELECT id, v FROM t WHERE id = ?")
        assert await select.get("x") == {"id": "x", "v": 1}
        assert await select.get("missing") is None
        assert await select.all("x") == [{"id": "x", "v": 1}]

        with pytest.raises(QueryError) as excinfo:
            await insert.run("x", 2)
        assert excinfo.value.code == "CONSTRAINT_ERROR"


@pytest.mark.asyncio
async def test_every_catalog_statement_compiles():
    names = [
        name
        for name, _ in inspect.getmembers(Statements, inspect.isfunction)
        if not name.startswith("_")
    ]
    async with aiosqlite.connect(":memory:") as conn:
        cache = StatementCache(conn, max_statements=len(names))
        catalog = Statements(cache)
        for name in names:
            statement = getattr(catalog, name)()
            assert statement.name == name
        assert len(cache) == len(names)
        assert catalog.get_entity() is catalog.get_entity()
