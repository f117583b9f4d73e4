from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

# Milliseconds since the Unix epoch, computed by SQLite itself.
NOW_MS = "CAST((julianday('now') - 2440587.5) * 86400000 AS INTEGER)"

LOG_LEVELS = ("fatal", "error", "warn", "info", "debug", "trace")

TABLE_NAMES = ("entities", "relations", "search_index", "log_entries", "schema_migrations")

LEDGER_SQL = f"""
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    applied_at INTEGER DEFAULT ({NOW_MS}),
    CHECK (version >= 0)
);
"""

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS entities (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    name TEXT NOT NULL,
    data JSON NOT NULL,
    created_at INTEGER DEFAULT ({NOW_MS}),
    updated_at INTEGER DEFAULT ({NOW_MS}),
    version INTEGER DEFAULT 1,
    CHECK (length(id) > 0),
    CHECK (length(type) > 0),
    CHECK (length(name) > 0),
    CHECK (version >= 1)
);

CREATE TABLE IF NOT EXISTS relations (
    id TEXT PRIMARY KEY,
    from_id TEXT NOT NULL,
    to_id TEXT NOT NULL,
    type TEXT NOT NULL,
    properties JSON,
    created_at INTEGER DEFAULT ({NOW_MS}),
    CHECK (length(id) > 0),
    CHECK (length(from_id) > 0),
    CHECK (length(to_id) > 0),
    CHECK (length(type) > 0),
    CHECK (from_id != to_id),
    FOREIGN KEY (from_id) REFERENCES entities(id) ON DELETE CASCADE,
    FOREIGN KEY (to_id) REFERENCES entities(id) ON DELETE CASCADE
);

-- Derived projection of entities; always regenerable from the entities table.
CREATE TABLE IF NOT EXISTS search_index (
    entity_id TEXT PRIMARY KEY,
    original_name TEXT NOT NULL,
    normalized_name TEXT NOT NULL,
    name_tokens TEXT NOT NULL,
    file_path TEXT,
    file_extension TEXT,
    entity_type TEXT NOT NULL,
    tags TEXT,
    full_text TEXT NOT NULL,
    trigrams TEXT,
    created_at INTEGER DEFAULT ({NOW_MS}),
    updated_at INTEGER DEFAULT ({NOW_MS}),
    CHECK (length(entity_id) > 0),
    CHECK (length(original_name) > 0),
    CHECK (length(normalized_name) > 0),
    CHECK (length(entity_type) > 0),
    FOREIGN KEY (entity_id) REFERENCES entities(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS log_entries (
    id TEXT PRIMARY KEY,
    timestamp INTEGER NOT NULL,
    level TEXT NOT NULL CHECK (level IN ('fatal', 'error', 'warn', 'info', 'debug', 'trace')),
    service TEXT NOT NULL,
    message TEXT NOT NULL,
    metadata JSON,
    process_id TEXT,
    session_id TEXT,
    trace_id TEXT,
    created_at INTEGER DEFAULT ({NOW_MS}),
    CHECK (length(id) > 0),
    CHECK (timestamp > 0),
    CHECK (length(service) > 0),
    CHECK (length(message) > 0)
);

CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(type);
CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(name);
CREATE INDEX IF NOT EXISTS idx_entities_type_name ON entities(type, name);
CREATE INDEX IF NOT EXISTS idx_entities_created_at ON entities(created_at);
CREATE INDEX IF NOT EXISTS idx_entities_updated_at ON entities(updated_at);

CREATE INDEX IF NOT EXISTS idx_relations_from_id ON relations(from_id);
CREATE INDEX IF NOT EXISTS idx_relations_to_id ON relations(to_id);
CREATE INDEX IF NOT EXISTS idx_relations_type ON relations(type);
CREATE INDEX IF NOT EXISTS idx_relations_from_type ON relations(from_id, type);
CREATE INDEX IF NOT EXISTS idx_relations_to_type ON relations(to_id, type);

CREATE INDEX IF NOT EXISTS idx_search_normalized_name ON search_index(normalized_name);
CREATE INDEX IF NOT EXISTS idx_search_entity_type ON search_index(entity_type);
CREATE INDEX IF NOT EXISTS idx_search_file_extension ON search_index(file_extension);
CREATE INDEX IF NOT EXISTS idx_search_file_path ON search_index(file_path);
CREATE INDEX IF NOT EXISTS idx_search_name_tokens ON search_index(name_tokens);
CREATE INDEX IF NOT EXISTS idx_search_updated_at ON search_index(updated_at);

CREATE INDEX IF NOT EXISTS idx_logs_timestamp ON log_entries(timestamp);
CREATE INDEX IF NOT EXISTS idx_logs_level ON log_entries(level);
CREATE INDEX IF NOT EXISTS idx_logs_service ON log_entries(service);
CREATE INDEX IF NOT EXISTS idx_logs_level_service ON log_entries(level, service);
CREATE INDEX IF NOT EXISTS idx_logs_timestamp_level ON log_entries(timestamp, level);
CREATE INDEX IF NOT EXISTS idx_logs_session_id ON log_entries(session_id);
CREATE INDEX IF NOT EXISTS idx_logs_trace_id ON log_entries(trace_id);

-- Each trigger names its columns so the nested UPDATEs below cannot re-fire
-- the version trigger: one user-visible update bumps version exactly once.
CREATE TRIGGER IF NOT EXISTS trg_entities_updated_at
AFTER UPDATE OF name, type, data, version ON entities
FOR EACH ROW
WHEN NEW.updated_at = OLD.updated_at
BEGIN
  UPDATE entities SET updated_at = MAX({NOW_MS}, OLD.updated_at + 1) WHERE id = NEW.id;
END;

CREATE TRIGGER IF NOT EXISTS trg_entities_version_increment
AFTER UPDATE OF name, type, data ON entities
FOR EACH ROW
WHEN NEW.version = OLD.version
BEGIN
  UPDATE entities SET version = OLD.version + 1 WHERE id = NEW.id;
END;

-- Coarse projection so rows exist even for writers that skip the indexer;
-- SearchIndexer.update_entity_index overwrites it with the full derivation.
CREATE TRIGGER IF NOT EXISTS trg_search_index_entity_insert
AFTER INSERT ON entities
FOR EACH ROW
BEGIN
  INSERT OR REPLACE INTO search_index (
    entity_id, original_name, normalized_name, name_tokens,
    entity_type, full_text, created_at, updated_at
  ) VALUES (
    NEW.id,
    NEW.name,
    lower(NEW.name),
    lower(replace(replace(NEW.name, '_', ' '), '-', ' ')),
    NEW.type,
    lower(NEW.name || ' ' || NEW.type || ' ' || json_extract(NEW.data, '$')),
    {NOW_MS},
    {NOW_MS}
  );
END;

CREATE TRIGGER IF NOT EXISTS trg_search_index_entity_update
AFTER UPDATE OF name, type, data ON entities
FOR EACH ROW
BEGIN
  UPDATE search_index SET
    original_name = NEW.name,
    normalized_name = lower(NEW.name),
    name_tokens = lower(replace(replace(NEW.name, '_', ' '), '-', ' ')),
    entity_type = NEW.type,
    full_text = lower(NEW.name || ' ' || NEW.type || ' ' || json_extract(NEW.data, '$')),
    updated_at = {NOW_MS}
  WHERE entity_id = NEW.id;
END;

CREATE VIEW IF NOT EXISTS entity_details AS
SELECT
  e.id,
  e.type,
  e.name,
  e.data,
  e.created_at,
  e.updated_at,
  e.version,
  si.file_path,
  si.file_extension,
  si.tags,
  (SELECT COUNT(*) FROM relations r WHERE r.from_id = e.id) AS outgoing_relations,
  (SELECT COUNT(*) FROM relations r WHERE r.to_id = e.id) AS incoming_relations
FROM entities e
LEFT JOIN search_index si ON e.id = si.entity_id;

CREATE VIEW IF NOT EXISTS relation_graph AS
SELECT
  r.id,
  r.type AS relation_type,
  r.properties,
  r.created_at,
  e_from.name AS from_name,
  e_from.type AS from_type,
  e_to.name AS to_name,
  e_to.type AS to_type
FROM relations r
JOIN entities e_from ON r.from_id = e_from.id
JOIN entities e_to ON r.to_id = e_to.id;

CREATE VIEW IF NOT EXISTS log_summary AS
SELECT
  service,
  level,
  COUNT(*) AS count,
  MIN(timestamp) AS first_occurrence,
  MAX(timestamp) AS last_occurrence
FROM log_entries
GROUP BY service, level;

CREATE VIEW IF NOT EXISTS recent_activity AS
SELECT 'entity' AS activity_type, id, name AS activity_name, type AS activity_subtype,
       updated_at AS activity_timestamp
FROM entities
WHERE updated_at > {NOW_MS} - 86400000
UNION ALL
SELECT 'relation', id, type, '', created_at
FROM relations
WHERE created_at > {NOW_MS} - 86400000
UNION ALL
SELECT 'log', id, service, level, timestamp
FROM log_entries
WHERE timestamp > {NOW_MS} - 86400000
ORDER BY activity_timestamp DESC;
"""

SCHEMA_ROLLBACK_SQL = """
DROP VIEW IF EXISTS recent_activity;
DROP VIEW IF EXISTS log_summary;
DROP VIEW IF EXISTS relation_graph;
DROP VIEW IF EXISTS entity_details;
DROP TRIGGER IF EXISTS trg_search_index_entity_update;
DROP TRIGGER IF EXISTS trg_search_index_entity_insert;
DROP TRIGGER IF EXISTS trg_entities_version_increment;
DROP TRIGGER IF EXISTS trg_entities_updated_at;
DROP TABLE IF EXISTS log_entries;
DROP TABLE IF EXISTS search_index;
DROP TABLE IF EXISTS relations;
DROP TABLE IF EXISTS entities;
"""


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    sql: str
    rollback: Optional[str] = None


MIGRATIONS: List[Migration] = [
    Migration(version=1, name="Initial schema", sql=SCHEMA_SQL, rollback=SCHEMA_ROLLBACK_SQL),
]

CURRENT_SCHEMA_VERSION = MIGRATIONS[-1].version


def validate_migrations(migrations: Sequence[Migration] = MIGRATIONS) -> None:
    """Migrations must be numbered 1..N with no gaps or repeats."""
    for expected, migration in enumerate(migrations, start=1):
        if migration.version != expected:
            raise ValueError(
                f"Migration {migration.name!r} has version {migration.version}; expected {expected}"
            )


def pending_migrations(current_version: int, migrations: Sequence[Migration] = MIGRATIONS) -> List[Migration]:
    return [m for m in migrations if m.version > current_version]
