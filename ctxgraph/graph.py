from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional

from .config import CtxGraphConfig
from .db import Database, build_in_query
from .errors import NotFoundError
from .indexer import IndexingStats, SearchIndexer
from .search import SearchEngine, SearchOptions, escape_like
from .text import load_data

DIRECTIONS = ("both", "outgoing", "incoming")


def _entity_out(row: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(row)
    out["data"] = load_data(row.get("data"), context=f"entity:{row.get('id')}")
    return out


def _relation_out(row: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(row)
    out["properties"] = load_data(row.get("properties"), context=f"relation:{row.get('id')}")
    return out


class KnowledgeGraph:
    """Entity/relation CRUD with the search index kept in step.

    Writes commit in their own transaction and then refresh the entity's
    index row through the indexer; deletes rely on ``ON DELETE CASCADE``
    to drop relations and index rows.
    """

    def __init__(
        self,
        db: Database,
        *,
        indexer: Optional[SearchIndexer] = None,
        search_engine: Optional[SearchEngine] = None,
        enable_indexing: bool = True,
    ) -> None:
        self.db = db
        self.indexer = indexer or SearchIndexer(db)
        self.search_engine = search_engine or SearchEngine(db)
        self.enable_indexing = enable_indexing

    @classmethod
    async def open(cls, cfg: CtxGraphConfig) -> "KnowledgeGraph":
        db = Database.from_config(cfg)
        await db.connect()
        return cls(
            db,
            indexer=SearchIndexer(db, batch_size=cfg.index_batch_size, rebuild_threshold=cfg.index_rebuild_threshold),
            search_engine=SearchEngine.from_config(db, cfg),
        )

    async def close(self) -> None:
        await self.db.disconnect()

    # Entities

    async def create_entity(
        self,
        entity_type: str,
        name: str,
        data: Optional[Dict[str, Any]] = None,
        *,
        entity_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        entity_id = entity_id or uuid.uuid4().hex
        stmts = self.db.statements

        async def write() -> Optional[Dict[str, Any]]:
            await stmts.insert_entity().run(entity_id, entity_type, name, json.dumps(data or {}))
            return await stmts.get_entity().get(entity_id)

        row = await self.db.transaction(write)
        if row is None:
            raise NotFoundError(f"Entity {entity_id} vanished after insert")
        if self.enable_indexing:
            await self.indexer.update_entity_index(row)
        logging.debug("Created entity %s (%s)", entity_id, entity_type)
        return _entity_out(row)

    async def get_entity(self, entity_id: str) -> Optional[Dict[str, Any]]:
        row = await self.db.statements.get_entity().get(entity_id)
        return _entity_out(row) if row else None

    async def get_entity_by_name(self, entity_type: str, name: str) -> Optional[Dict[str, Any]]:
        row = await self.db.statements.get_entity_by_name().get(entity_type, name)
        return _entity_out(row) if row else None

    async def get_entities(self, entity_ids: List[str]) -> List[Dict[str, Any]]:
        if not entity_ids:
            return []
        query = build_in_query(
            "SELECT id, type, name, data, created_at, updated_at, version FROM entities WHERE id IN ",
            entity_ids,
            " ORDER BY name",
        )
        return [_entity_out(r) for r in await self.db.query(query.text, query.params)]

    async def update_entity(
        self,
        entity_id: str,
        *,
        name: Optional[str] = None,
        entity_type: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Apply a partial update; ``data`` is merged key by key into the stored document."""
        stmts = self.db.statements

        async def write() -> Optional[Dict[str, Any]]:
            current = await stmts.get_entity().get(entity_id)
            if current is None:
                raise NotFoundError(f"Entity {entity_id} not found")
            merged = load_data(current["data"], context=f"entity:{entity_id}")
            merged.update(data or {})
            await stmts.update_entity().run(
                entity_type or current["type"],
                name or current["name"],
                json.dumps(merged),
                entity_id,
            )
            return await stmts.get_entity().get(entity_id)

        row = await self.db.transaction(write)
        if row is None:
            raise NotFoundError(f"Entity {entity_id} not found")
        if self.enable_indexing:
            await self.indexer.update_entity_index(row)
        return _entity_out(row)

    async def delete_entity(self, entity_id: str) -> None:
        stmts = self.db.statements

        async def write() -> int:
            result = await stmts.delete_entity().run(entity_id)
            return result.rowcount

        if not await self.db.transaction(write):
            raise NotFoundError(f"Entity {entity_id} not found")
        logging.debug("Deleted entity %s", entity_id)

    async def list_entities(
        self,
        *,
        entity_type: Optional[str] = None,
        name_contains: Optional[str] = None,
        updated_after: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        if entity_type and not name_contains and updated_after is None:
            rows = await self.db.statements.list_entities_by_type().all(entity_type, int(limit), int(offset))
            return [_entity_out(r) for r in rows]

        clauses: List[str] = []
        params: List[Any] = []
        if entity_type:
            clauses.append("type = ?")
            params.append(entity_type)
        if name_contains:
            clauses.append("name LIKE ? ESCAPE '\\'")
            params.append(f"%{escape_like(name_contains)}%")
        if updated_after is not None:
            clauses.append("updated_at > ?")
            params.append(int(updated_after))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([int(limit), int(offset)])
        rows = await self.db.query(
            f"""
            SELECT id, type, name, data, created_at, updated_at, version
            FROM entities
            {where}
            ORDER BY name, id
            LIMIT ? OFFSET ?
            """,
            params,
        )
        return [_entity_out(r) for r in rows]

    async def count_entities(self, entity_type: Optional[str] = None) -> int:
        stmts = self.db.statements
        if entity_type:
            row = await stmts.count_entities_by_type().get(entity_type)
        else:
            row = await stmts.count_entities().get()
        return int((row or {}).get("count") or 0)

    # Relations

    async def create_relation(
        self,
        from_id: str,
        to_id: str,
        relation_type: str,
        properties: Optional[Dict[str, Any]] = None,
        *,
        relation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Insert a directed edge; self-edges and dangling endpoints fail with ``CONSTRAINT_ERROR``."""
        relation_id = relation_id or uuid.uuid4().hex
        stmts = self.db.statements

        async def write() -> Optional[Dict[str, Any]]:
            await stmts.insert_relation().run(
                relation_id, from_id, to_id, relation_type, json.dumps(properties or {})
            )
            return await stmts.get_relation().get(relation_id)

        row = await self.db.transaction(write)
        if row is None:
            raise NotFoundError(f"Relation {relation_id} vanished after insert")
        return _relation_out(row)

    async def get_relation(self, relation_id: str) -> Optional[Dict[str, Any]]:
        row = await self.db.statements.get_relation().get(relation_id)
        return _relation_out(row) if row else None

    async def delete_relation(self, relation_id: str) -> None:
        stmts = self.db.statements

        async def write() -> int:
            return (await stmts.delete_relation().run(relation_id)).rowcount

        if not await self.db.transaction(write):
            raise NotFoundError(f"Relation {relation_id} not found")

    async def get_entity_relations(self, entity_id: str, direction: str = "both") -> List[Dict[str, Any]]:
        if direction not in DIRECTIONS:
            raise ValueError(f"direction must be one of {', '.join(DIRECTIONS)}")
        stmts = self.db.statements
        if direction == "outgoing":
            rows = await stmts.get_outgoing_relations().all(entity_id)
        elif direction == "incoming":
            rows = await stmts.get_incoming_relations().all(entity_id)
        else:
            rows = await stmts.get_relations_by_entity().all(entity_id, entity_id)
        return [_relation_out(r) for r in rows]

    async def get_relations_by_type(self, relation_type: str, limit: int = 100) -> List[Dict[str, Any]]:
        rows = await self.db.statements.get_relations_by_type().all(relation_type, int(limit))
        return [_relation_out(r) for r in rows]

    # Traversal

    async def find_connected(self, entity_id: str, max_depth: int = 2) -> List[Dict[str, Any]]:
        """Entities reachable within ``max_depth`` hops in either direction, nearest first.

        The starting entity is included at depth 0.
        """
        return await self.db.statements.find_connected_entities().all(entity_id, max(0, int(max_depth)))

    async def get_neighbors(self, entity_id: str) -> List[Dict[str, Any]]:
        return await self.db.statements.get_entity_neighbors().all(entity_id)

    # Search

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> List[Dict[str, Any]]:
        return await self.search_engine.search(query, options)

    async def rebuild_search_index(self) -> IndexingStats:
        return await self.indexer.rebuild_index()

    async def get_stats(self) -> Dict[str, Any]:
        row = await self.db.statements.get_knowledge_graph_stats().get() or {}
        by_type = await self.db.query(
            "SELECT type, COUNT(*) AS count FROM entities GROUP BY type ORDER BY count DESC, type"
        )
        relation_types = await self.db.query(
            "SELECT type, COUNT(*) AS count FROM relations GROUP BY type ORDER BY count DESC, type"
        )
        return {
            "entities": int(row.get("entity_count") or 0),
            "relations": int(row.get("relation_count") or 0),
            "index_size": int(row.get("index_size") or 0),
            "avg_entity_connections": float(row.get("avg_entity_connections") or 0.0),
            "entities_by_type": {r["type"]: int(r["count"]) for r in by_type},
            "relations_by_type": {r["type"]: int(r["count"]) for r in relation_types},
        }
