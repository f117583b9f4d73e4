from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

from .db import Database
from .text import SearchIndexEntry, build_index_entry

UPDATE_MODES = ("full", "incremental")

_DERIVED_FIELDS = (
    "original_name",
    "normalized_name",
    "name_tokens",
    "file_path",
    "file_extension",
    "entity_type",
    "tags",
    "full_text",
    "trigrams",
)


@dataclass
class IndexingStats:
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _is_current(existing: Mapping[str, Any], entry: SearchIndexEntry) -> bool:
    derived = entry.to_dict()
    return all(existing.get(f) == derived[f] for f in _DERIVED_FIELDS)


@dataclass
class SearchIndexer:
    """Keeps ``search_index`` eventually consistent with ``entities``.

    The index is a materialized view: any row can be recomputed from its
    entity, so failures while populating are counted and skipped rather
    than aborting, and ``optimize_index`` rebuilds when rows go missing.
    """

    db: Database
    batch_size: int = 100
    rebuild_threshold: float = 0.9

    async def update_entity_index(self, entity: Mapping[str, Any]) -> SearchIndexEntry:
        entry = build_index_entry(entity)
        async with self.db.atomic():
            await self.db.statements.upsert_search_index().run(*entry.as_params())
        logging.debug("Updated search index for entity %s", entry.entity_id)
        return entry

    async def remove_entity_index(self, entity_id: str) -> bool:
        async with self.db.atomic():
            result = await self.db.statements.delete_search_index().run(entity_id)
        return result.rowcount > 0

    async def clear_index(self) -> int:
        async with self.db.atomic():
            result = await self.db.statements.clear_search_index().run()
        logging.info("Cleared search index (%s rows)", result.rowcount)
        return result.rowcount

    async def populate_index(
        self,
        *,
        batch_size: Optional[int] = None,
        skip_existing: bool = False,
        update_mode: str = "full",
    ) -> IndexingStats:
        """Index every entity in creation order, one transaction per batch.

        ``skip_existing`` leaves any existing row untouched. In
        ``incremental`` mode rows whose derived values already match the
        entity are skipped; ``full`` rewrites them.
        """
        if update_mode not in UPDATE_MODES:
            raise ValueError(f"update_mode must be one of {', '.join(UPDATE_MODES)}")
        size = max(1, int(batch_size or self.batch_size))
        stats = IndexingStats()
        start = time.perf_counter()
        stmts = self.db.statements

        offset = 0
        while True:
            entities = await stmts.list_all_entities().all(size, offset)
            if not entities:
                break
            offset += len(entities)

            async with self.db.atomic():
                for entity in entities:
                    stats.processed += 1
                    try:
                        async with self.db.atomic():
                            existing = await stmts.get_search_index_entry().get(entity["id"])
                            if existing is not None and skip_existing:
                                stats.skipped += 1
                                continue
                            entry = build_index_entry(entity)
                            if existing is not None and update_mode == "incremental" and _is_current(existing, entry):
                                stats.skipped += 1
                                continue
                            await stmts.upsert_search_index().run(*entry.as_params())
                    except Exception:
                        stats.errors += 1
                        logging.warning("Failed to index entity %s", entity.get("id"), exc_info=True)
                        continue
                    if existing is None:
                        stats.created += 1
                    else:
                        stats.updated += 1

        stats.duration_ms = (time.perf_counter() - start) * 1000.0
        logging.info(
            "Indexed %s entities (created=%s updated=%s skipped=%s errors=%s) in %.1fms",
            stats.processed,
            stats.created,
            stats.updated,
            stats.skipped,
            stats.errors,
            stats.duration_ms,
        )
        return stats

    async def rebuild_index(self) -> IndexingStats:
        await self.clear_index()
        return await self.populate_index(update_mode="full")

    async def get_index_stats(self) -> Dict[str, Any]:
        totals = await self.db.query_one(
            """
            SELECT
              COUNT(*) AS total_entries,
              COALESCE(SUM(file_path IS NOT NULL AND file_path != ''), 0) AS entries_with_path,
              COALESCE(SUM(tags IS NOT NULL AND tags != ''), 0) AS entries_with_tags,
              MAX(updated_at) AS last_updated
            FROM search_index
            """
        ) or {}
        by_type = await self.db.query(
            "SELECT entity_type, COUNT(*) AS count FROM search_index GROUP BY entity_type ORDER BY count DESC"
        )
        return {
            "total_entries": int(totals.get("total_entries") or 0),
            "entries_by_type": {r["entity_type"]: int(r["count"]) for r in by_type},
            "entries_with_path": int(totals.get("entries_with_path") or 0),
            "entries_with_tags": int(totals.get("entries_with_tags") or 0),
            "last_updated": totals.get("last_updated"),
        }

    async def optimize_index(self, rebuild_threshold: Optional[float] = None) -> Dict[str, Any]:
        """ANALYZE the index and rebuild it when too many rows are missing."""
        threshold = self.rebuild_threshold if rebuild_threshold is None else float(rebuild_threshold)
        await self.db.execute("ANALYZE search_index")
        index_row = await self.db.statements.count_search_index().get()
        entity_row = await self.db.statements.count_entities().get()
        index_count = int((index_row or {}).get("count") or 0)
        entity_count = int((entity_row or {}).get("count") or 0)

        rebuilt: Optional[IndexingStats] = None
        if index_count < entity_count * threshold:
            logging.warning(
                "Search index has %s rows for %s entities; rebuilding.", index_count, entity_count
            )
            rebuilt = await self.rebuild_index()
        return {
            "analyzed": True,
            "index_entries": index_count,
            "entities": entity_count,
            "rebuilt": rebuilt is not None,
            "rebuild_stats": rebuilt.to_dict() if rebuilt else None,
            "stats": await self.get_index_stats(),
        }
