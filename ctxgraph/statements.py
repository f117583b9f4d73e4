from __future__ import annotations

import logging
import sqlite3
import textwrap
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict, List, Optional

import aiosqlite

from .errors import QueryError
from .schema import NOW_MS

DEFAULT_MAX_STATEMENTS = 100

Guard = Callable[[], AsyncContextManager[None]]

SEARCH_COLUMNS = "entity_id, original_name, entity_type, file_path"
ENTITY_COLUMNS = "id, type, name, data, created_at, updated_at, version"
RELATION_COLUMNS = "id, from_id, to_id, type, properties, created_at"
LOG_COLUMNS = (
    "id, timestamp, level, service, message, metadata, process_id, session_id, trace_id, created_at"
)


@dataclass(frozen=True)
class ExecuteResult:
    rowcount: int
    lastrowid: Optional[int]


def wrap_sqlite_error(exc: BaseException, message: str, code: str = "QUERY_ERROR") -> QueryError:
    """Map a driver exception onto the query error taxonomy."""
    if isinstance(exc, sqlite3.IntegrityError):
        return QueryError(f"{message}: constraint violation", code="CONSTRAINT_ERROR", cause=exc)
    return QueryError(message, code=code, cause=exc)


def _compile(name: str, sql: str) -> str:
    text = textwrap.dedent(sql).strip()
    if not text:
        raise QueryError(f"Statement {name!r} has no SQL", code="PREPARE_ERROR")
    terminated = text if text.endswith(";") else text + ";"
    if not sqlite3.complete_statement(terminated):
        raise QueryError(f"Statement {name!r} is not a complete SQL statement", code="PREPARE_ERROR")
    return text


@asynccontextmanager
async def _unguarded() -> AsyncIterator[None]:
    yield


class Statement:
    """A named, validated SQL statement bound to one connection.

    The driver keeps the compiled form in its own per-connection cache
    (sized from ``max_prepared_statements``), keyed by the SQL text.
    Each execution runs inside ``guard()``, which the owning database uses
    to keep statements out of another task's open transaction.
    """

    def __init__(self, conn: aiosqlite.Connection, name: str, sql: str, guard: Optional[Guard] = None) -> None:
        self.conn = conn
        self.name = name
        self.sql = _compile(name, sql)
        self.guard = guard or _unguarded

    async def all(self, *params: Any) -> List[Dict[str, Any]]:
        try:
            async with self.guard():
                async with self.conn.execute(self.sql, params) as cursor:
                    rows = await cursor.fetchall()
        except sqlite3.Error as exc:
            raise wrap_sqlite_error(exc, f"Statement {self.name} failed") from exc
        return [dict(r) for r in rows]

    async def get(self, *params: Any) -> Optional[Dict[str, Any]]:
        try:
            async with self.guard():
                async with self.conn.execute(self.sql, params) as cursor:
                    row = await cursor.fetchone()
        except sqlite3.Error as exc:
            raise wrap_sqlite_error(exc, f"Statement {self.name} failed") from exc
        return dict(row) if row is not None else None

    async def run(self, *params: Any) -> ExecuteResult:
        try:
            async with self.guard():
                async with self.conn.execute(self.sql, params) as cursor:
                    return ExecuteResult(rowcount=cursor.rowcount, lastrowid=cursor.lastrowid)
        except sqlite3.Error as exc:
            raise wrap_sqlite_error(exc, f"Statement {self.name} failed", code="EXECUTE_ERROR") from exc


@dataclass
class PreparedStatementInfo:
    name: str
    sql: str
    statement: Statement
    created_at: float
    last_used: float
    usage_count: int = 0


class StatementCache:
    """Instance-scoped LRU of named statements.

    Entries are kept in ``last_used`` order, so the head of the dict is
    always the eviction candidate.
    """

    def __init__(
        self,
        conn: aiosqlite.Connection,
        max_statements: int = DEFAULT_MAX_STATEMENTS,
        *,
        guard: Optional[Guard] = None,
    ) -> None:
        self.conn = conn
        self.guard = guard
        self.max_statements = max(1, int(max_statements))
        self._entries: "OrderedDict[str, PreparedStatementInfo]" = OrderedDict()

    def get(self, name: str, sql: str) -> Statement:
        now = time.monotonic()
        info = self._entries.get(name)
        if info is not None:
            info.last_used = now
            info.usage_count += 1
            self._entries.move_to_end(name)
            return info.statement

        statement = Statement(self.conn, name, sql, self.guard)
        while len(self._entries) >= self.max_statements:
            evicted, _ = self._entries.popitem(last=False)
            logging.debug("Evicted prepared statement %s", evicted)
        self._entries[name] = PreparedStatementInfo(
            name=name,
            sql=statement.sql,
            statement=statement,
            created_at=now,
            last_used=now,
            usage_count=1,
        )
        return statement

    def info(self, name: str) -> Optional[PreparedStatementInfo]:
        return self._entries.get(name)

    def remove(self, name: str) -> bool:
        return self._entries.pop(name, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def get_stats(self) -> Dict[str, Any]:
        entries = list(self._entries.values())
        most_used = sorted(entries, key=lambda e: e.usage_count, reverse=True)[:10]
        oldest = min(entries, key=lambda e: e.created_at) if entries else None
        return {
            "total": len(entries),
            "max_capacity": self.max_statements,
            "most_used": [{"name": e.name, "usage_count": e.usage_count} for e in most_used],
            "oldest_statement": oldest.name if oldest else None,
        }


class Statements:
    """Catalog of the named queries used by the rest of the package."""

    def __init__(self, cache: StatementCache) -> None:
        self.cache = cache

    def _get(self, name: str, sql: str) -> Statement:
        return self.cache.get(name, sql)

    # Entities

    def get_entity(self) -> Statement:
        return self._get("get_entity", f"SELECT {ENTITY_COLUMNS} FROM entities WHERE id = ?")

    def get_entity_by_name(self) -> Statement:
        return self._get(
            "get_entity_by_name",
            f"SELECT {ENTITY_COLUMNS} FROM entities WHERE type = ? AND name = ?",
        )

    def insert_entity(self) -> Statement:
        return self._get(
            "insert_entity",
            f"""
            INSERT INTO entities (id, type, name, data, created_at, updated_at, version)
            VALUES (?, ?, ?, json(?), {NOW_MS}, {NOW_MS}, 1)
            """,
        )

    def update_entity(self) -> Statement:
        # Setting version and updated_at here keeps the triggers' guards false.
        return self._get(
            "update_entity",
            f"""
            UPDATE entities
            SET type = ?, name = ?, data = json(?),
                version = version + 1,
                updated_at = MAX({NOW_MS}, updated_at + 1)
            WHERE id = ?
            """,
        )

    def delete_entity(self) -> Statement:
        return self._get("delete_entity", "DELETE FROM entities WHERE id = ?")

    def list_entities_by_type(self) -> Statement:
        return self._get(
            "list_entities_by_type",
            f"SELECT {ENTITY_COLUMNS} FROM entities WHERE type = ? ORDER BY name, id LIMIT ? OFFSET ?",
        )

    def count_entities_by_type(self) -> Statement:
        return self._get("count_entities_by_type", "SELECT COUNT(*) AS count FROM entities WHERE type = ?")

    def list_all_entities(self) -> Statement:
        return self._get(
            "list_all_entities",
            f"SELECT {ENTITY_COLUMNS} FROM entities ORDER BY created_at, rowid LIMIT ? OFFSET ?",
        )

    def count_entities(self) -> Statement:
        return self._get("count_entities", "SELECT COUNT(*) AS count FROM entities")

    # Relations

    def get_relation(self) -> Statement:
        return self._get("get_relation", f"SELECT {RELATION_COLUMNS} FROM relations WHERE id = ?")

    def insert_relation(self) -> Statement:
        return self._get(
            "insert_relation",
            f"""
            INSERT INTO relations (id, from_id, to_id, type, properties, created_at)
            VALUES (?, ?, ?, ?, json(?), {NOW_MS})
            """,
        )

    def delete_relation(self) -> Statement:
        return self._get("delete_relation", "DELETE FROM relations WHERE id = ?")

    def delete_entity_relations(self) -> Statement:
        return self._get("delete_entity_relations", "DELETE FROM relations WHERE from_id = ? OR to_id = ?")

    def get_relations_by_entity(self) -> Statement:
        return self._get(
            "get_relations_by_entity",
            f"""
            SELECT {RELATION_COLUMNS} FROM relations
            WHERE from_id = ? OR to_id = ?
            ORDER BY created_at, id
            """,
        )

    def get_outgoing_relations(self) -> Statement:
        return self._get(
            "get_outgoing_relations",
            f"SELECT {RELATION_COLUMNS} FROM relations WHERE from_id = ? ORDER BY created_at, id",
        )

    def get_incoming_relations(self) -> Statement:
        return self._get(
            "get_incoming_relations",
            f"SELECT {RELATION_COLUMNS} FROM relations WHERE to_id = ? ORDER BY created_at, id",
        )

    def get_relations_by_type(self) -> Statement:
        return self._get(
            "get_relations_by_type",
            f"SELECT {RELATION_COLUMNS} FROM relations WHERE type = ? ORDER BY created_at, id LIMIT ?",
        )

    def count_relations(self) -> Statement:
        return self._get("count_relations", "SELECT COUNT(*) AS count FROM relations")

    # Search index

    def upsert_search_index(self) -> Statement:
        return self._get(
            "upsert_search_index",
            f"""
            INSERT INTO search_index (
                entity_id, original_name, normalized_name, name_tokens, file_path,
                file_extension, entity_type, tags, full_text, trigrams, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, {NOW_MS}, {NOW_MS})
            ON CONFLICT(entity_id) DO UPDATE SET
              original_name = excluded.original_name,
              normalized_name = excluded.normalized_name,
              name_tokens = excluded.name_tokens,
              file_path = excluded.file_path,
              file_extension = excluded.file_extension,
              entity_type = excluded.entity_type,
              tags = excluded.tags,
              full_text = excluded.full_text,
              trigrams = excluded.trigrams,
              updated_at = excluded.updated_at
            """,
        )

    def delete_search_index(self) -> Statement:
        return self._get("delete_search_index", "DELETE FROM search_index WHERE entity_id = ?")

    def clear_search_index(self) -> Statement:
        return self._get("clear_search_index", "DELETE FROM search_index")

    def get_search_index_entry(self) -> Statement:
        return self._get(
            "get_search_index_entry",
            """
            SELECT entity_id, original_name, normalized_name, name_tokens, file_path,
                   file_extension, entity_type, tags, full_text, trigrams, updated_at
            FROM search_index WHERE entity_id = ?
            """,
        )

    def count_search_index(self) -> Statement:
        return self._get("count_search_index", "SELECT COUNT(*) AS count FROM search_index")

    def search_by_prefix(self) -> Statement:
        return self._get(
            "search_by_prefix",
            f"""
            SELECT {SEARCH_COLUMNS} FROM search_index
            WHERE normalized_name LIKE ? ESCAPE '\\'
            ORDER BY length(normalized_name), original_name
            LIMIT ? OFFSET ?
            """,
        )

    def search_by_suffix(self) -> Statement:
        return self._get(
            "search_by_suffix",
            f"""
            SELECT {SEARCH_COLUMNS} FROM search_index
            WHERE normalized_name LIKE ? ESCAPE '\\'
            ORDER BY length(normalized_name), original_name
            LIMIT ? OFFSET ?
            """,
        )

    def search_by_contains(self) -> Statement:
        return self._get(
            "search_by_contains",
            f"""
            SELECT {SEARCH_COLUMNS} FROM search_index
            WHERE normalized_name LIKE ? ESCAPE '\\'
            ORDER BY length(normalized_name), original_name
            LIMIT ? OFFSET ?
            """,
        )

    def search_by_name_glob(self) -> Statement:
        # Case-sensitive variant of prefix/suffix/contains; GLOB honours case.
        return self._get(
            "search_by_name_glob",
            f"""
            SELECT {SEARCH_COLUMNS} FROM search_index
            WHERE original_name GLOB ?
            ORDER BY length(normalized_name), original_name
            LIMIT ? OFFSET ?
            """,
        )

    def search_by_extension(self) -> Statement:
        return self._get(
            "search_by_extension",
            f"""
            SELECT {SEARCH_COLUMNS} FROM search_index
            WHERE file_extension = ?
            ORDER BY length(normalized_name), original_name
            LIMIT ? OFFSET ?
            """,
        )

    def search_by_type(self) -> Statement:
        return self._get(
            "search_by_type",
            f"""
            SELECT {SEARCH_COLUMNS} FROM search_index
            WHERE entity_type = ?
            ORDER BY length(normalized_name), original_name
            LIMIT ? OFFSET ?
            """,
        )

    def search_exact(self) -> Statement:
        return self._get(
            "search_exact",
            f"""
            SELECT {SEARCH_COLUMNS} FROM search_index
            WHERE normalized_name = ?
            ORDER BY original_name
            LIMIT ? OFFSET ?
            """,
        )

    def search_exact_case_sensitive(self) -> Statement:
        return self._get(
            "search_exact_case_sensitive",
            f"""
            SELECT {SEARCH_COLUMNS} FROM search_index
            WHERE original_name = ?
            ORDER BY original_name
            LIMIT ? OFFSET ?
            """,
        )

    def search_by_path(self) -> Statement:
        return self._get(
            "search_by_path",
            f"""
            SELECT {SEARCH_COLUMNS} FROM search_index
            WHERE file_path LIKE ? ESCAPE '\\'
            ORDER BY file_path, original_name
            LIMIT ? OFFSET ?
            """,
        )

    def search_fuzzy(self) -> Statement:
        return self._get(
            "search_fuzzy",
            f"""
            SELECT {SEARCH_COLUMNS}, similarity_score FROM (
                SELECT {SEARCH_COLUMNS}, trigram_similarity(trigrams, ?) AS similarity_score
                FROM search_index
                WHERE trigrams IS NOT NULL AND trigrams != ''
            )
            WHERE similarity_score >= ?
            ORDER BY similarity_score DESC, original_name
            LIMIT ? OFFSET ?
            """,
        )

    def search_full_text(self) -> Statement:
        return self._get(
            "search_full_text",
            f"""
            SELECT {SEARCH_COLUMNS} FROM search_index
            WHERE full_text LIKE ? ESCAPE '\\'
            ORDER BY original_name
            LIMIT ? OFFSET ?
            """,
        )

    def search_text(self) -> Statement:
        # Params: ?1 prefix pattern, ?2 contains pattern, ?3 limit, ?4 offset.
        return self._get(
            "search_text",
            f"""
            SELECT {SEARCH_COLUMNS}, relevance_score FROM (
                SELECT {SEARCH_COLUMNS}, normalized_name,
                  CASE
                    WHEN normalized_name LIKE ?1 ESCAPE '\\' THEN 3
                    WHEN normalized_name LIKE ?2 ESCAPE '\\' THEN 2
                    WHEN full_text LIKE ?2 ESCAPE '\\' THEN 1
                    ELSE 0
                  END AS relevance_score
                FROM search_index
            )
            WHERE relevance_score > 0
            ORDER BY relevance_score DESC, length(normalized_name), original_name
            LIMIT ?3 OFFSET ?4
            """,
        )

    def search_all(self) -> Statement:
        return self._get(
            "search_all",
            f"""
            SELECT {SEARCH_COLUMNS} FROM search_index
            ORDER BY length(normalized_name), original_name
            LIMIT ? OFFSET ?
            """,
        )

    def search_regex_candidates(self) -> Statement:
        return self._get(
            "search_regex_candidates",
            f"""
            SELECT {SEARCH_COLUMNS} FROM search_index
            ORDER BY original_name
            LIMIT ? OFFSET ?
            """,
        )

    # Log entries

    # A retried flush may carry ids a timed-out flush already committed.
    def insert_log_entry(self) -> Statement:
        return self._get(
            "insert_log_entry",
            f"""
            INSERT INTO log_entries (
                id, timestamp, level, service, message, metadata,
                process_id, session_id, trace_id, created_at
            ) VALUES (?, ?, ?, ?, ?, json(?), ?, ?, ?, {NOW_MS})
            ON CONFLICT(id) DO NOTHING
            """,
        )

    def get_log_entries(self) -> Statement:
        return self._get(
            "get_log_entries",
            f"""
            SELECT {LOG_COLUMNS} FROM log_entries
            WHERE timestamp >= ? AND timestamp <= ?
            ORDER BY timestamp DESC
            LIMIT ?
            """,
        )

    def get_log_entries_by_level(self) -> Statement:
        return self._get(
            "get_log_entries_by_level",
            f"""
            SELECT {LOG_COLUMNS} FROM log_entries
            WHERE level = ? AND timestamp >= ? AND timestamp <= ?
            ORDER BY timestamp DESC
            LIMIT ?
            """,
        )

    def get_log_entries_by_service(self) -> Statement:
        return self._get(
            "get_log_entries_by_service",
            f"""
            SELECT {LOG_COLUMNS} FROM log_entries
            WHERE service = ? AND timestamp >= ? AND timestamp <= ?
            ORDER BY timestamp DESC
            LIMIT ?
            """,
        )

    def delete_old_log_entries(self) -> Statement:
        return self._get("delete_old_log_entries", "DELETE FROM log_entries WHERE timestamp < ?")

    def delete_excess_log_entries(self) -> Statement:
        return self._get(
            "delete_excess_log_entries",
            """
            DELETE FROM log_entries WHERE id IN (
                SELECT id FROM log_entries
                ORDER BY timestamp DESC, rowid DESC
                LIMIT -1 OFFSET ?
            )
            """,
        )

    def get_log_stats(self) -> Statement:
        return self._get(
            "get_log_stats",
            """
            SELECT service, level, COUNT(*) AS count,
                   MIN(timestamp) AS first_occurrence,
                   MAX(timestamp) AS last_occurrence
            FROM log_entries
            WHERE timestamp >= ?
            GROUP BY service, level
            ORDER BY count DESC
            """,
        )

    # Migrations

    def get_current_schema_version(self) -> Statement:
        return self._get(
            "get_current_schema_version",
            "SELECT version FROM schema_migrations ORDER BY version DESC LIMIT 1",
        )

    # connect() writes ledger rows with inline SQL; this cache is built after migrations run.
    def record_migration(self) -> Statement:
        return self._get(
            "record_migration",
            f"INSERT INTO schema_migrations (version, name, applied_at) VALUES (?, ?, {NOW_MS})",
        )

    # Diagnostics

    def health_check(self) -> Statement:
        return self._get(
            "health_check",
            """
            SELECT
              (SELECT COUNT(*) FROM entities) AS entity_count,
              (SELECT COUNT(*) FROM relations) AS relation_count,
              (SELECT COUNT(*) FROM log_entries) AS log_count,
              (SELECT COUNT(*) FROM search_index) AS search_index_count
            """,
        )

    def get_knowledge_graph_stats(self) -> Statement:
        return self._get(
            "get_knowledge_graph_stats",
            """
            SELECT
              (SELECT COUNT(*) FROM entities) AS entity_count,
              (SELECT COUNT(*) FROM relations) AS relation_count,
              (SELECT COUNT(*) FROM search_index) AS index_size,
              COALESCE(
                (SELECT CAST(COUNT(*) AS REAL) / COUNT(DISTINCT from_id) FROM relations), 0
              ) AS avg_entity_connections
            """,
        )

    # Graph traversal

    def find_connected_entities(self) -> Statement:
        # UNION (not UNION ALL) plus the depth bound keeps cycles finite.
        return self._get(
            "find_connected_entities",
            """
            WITH RECURSIVE connected(id, depth) AS (
                SELECT ?1, 0
                UNION
                SELECT CASE WHEN r.from_id = c.id THEN r.to_id ELSE r.from_id END, c.depth + 1
                FROM connected c
                JOIN relations r ON r.from_id = c.id OR r.to_id = c.id
                WHERE c.depth < ?2
            )
            SELECT e.id, e.name, e.type, MIN(c.depth) AS depth
            FROM connected c
            JOIN entities e ON e.id = c.id
            GROUP BY e.id
            ORDER BY depth, e.name
            """,
        )

    def get_entity_neighbors(self) -> Statement:
        return self._get(
            "get_entity_neighbors",
            """
            SELECT e.id, e.name, e.type, r.id AS relation_id, r.type AS relation_type,
              CASE WHEN r.from_id = ?1 THEN 'outgoing' ELSE 'incoming' END AS direction
            FROM relations r
            JOIN entities e ON (
                (r.from_id = ?1 AND r.to_id = e.id) OR
                (r.to_id = ?1 AND r.from_id = e.id)
            )
            ORDER BY e.name, direction
            """,
        )
