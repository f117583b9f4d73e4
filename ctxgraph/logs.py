from __future__ import annotations

import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .config import RETENTION_POLICIES, CtxGraphConfig
from .db import Database, build_in_query
from .schema import LOG_LEVELS
from .search import escape_like
from .text import load_data

IMMEDIATE_FLUSH_LEVELS = ("fatal", "error")
ERROR_LEVELS = ("error", "fatal")
SEARCHABLE_METADATA_KEYS = ("error", "operation", "module", "function", "category", "tag")

_LEVEL_ALIASES = {"warning": "warn", "critical": "fatal", "err": "error"}

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_level(level: str) -> str:
    value = str(level or "").strip().lower()
    value = _LEVEL_ALIASES.get(value, value)
    if value not in LOG_LEVELS:
        raise ValueError(f"Unknown log level {level!r}; expected one of {', '.join(LOG_LEVELS)}")
    return value


def _flatten(value: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, item in value.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(item, Mapping):
            flat.update(_flatten(item, path))
        else:
            flat[path] = item
    return flat


def _is_indexable(value: Any) -> bool:
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


@dataclass
class LogEntry:
    level: str
    message: str
    service: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: int = field(default_factory=now_ms)
    process_id: Optional[str] = field(default_factory=lambda: str(os.getpid()))
    session_id: Optional[str] = None
    trace_id: Optional[str] = None

    @property
    def indexed_content(self) -> str:
        """Lowercased message plus the searchable metadata values, for matching in memory."""
        parts = [self.message]
        for key in SEARCHABLE_METADATA_KEYS:
            if self.metadata.get(key):
                parts.append(str(self.metadata[key]))
        parts.extend(str(v) for v in _flatten(self.metadata).values() if _is_indexable(v))
        return " ".join(parts).lower()

    def as_params(self) -> tuple:
        return (
            self.id,
            int(self.timestamp),
            self.level,
            self.service,
            self.message,
            json.dumps(self.metadata or {}),
            self.process_id,
            self.session_id,
            self.trace_id,
        )


@dataclass
class LogFilter:
    level: Union[str, Sequence[str], None] = None
    service: Union[str, Sequence[str], None] = None
    message: Optional[str] = None
    start: Optional[int] = None
    end: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def _as_list(value: Union[str, Sequence[str], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _log_out(row: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(row)
    out["metadata"] = load_data(row.get("metadata"), context=f"log:{row.get('id')}")
    return out


class LogService:
    """Buffered writer and query surface over ``log_entries``.

    Entries collect in memory and are written in one transaction when the
    buffer reaches ``batch_size``, when an ``error``/``fatal`` entry arrives,
    or on an explicit ``flush()``/``shutdown()``. There is no background
    timer; callers that log rarely should flush themselves.
    """

    def __init__(
        self,
        db: Database,
        *,
        service_name: str = "ctxgraph",
        batch_size: int = 100,
        retention_policy: str = "time_based",
        max_age_days: int = 30,
        max_entries: int = 1_000_000,
    ) -> None:
        if retention_policy not in RETENTION_POLICIES:
            raise ValueError(f"retention_policy must be one of {', '.join(RETENTION_POLICIES)}")
        self.db = db
        self.service_name = service_name
        self.batch_size = max(1, int(batch_size))
        self.retention_policy = retention_policy
        self.max_age_days = int(max_age_days)
        self.max_entries = int(max_entries)
        self._buffer: List[LogEntry] = []

    @classmethod
    def from_config(cls, db: Database, cfg: CtxGraphConfig) -> "LogService":
        return cls(
            db,
            service_name=cfg.log_service_name,
            batch_size=cfg.log_batch_size,
            retention_policy=cfg.log_retention_policy,
            max_age_days=cfg.log_max_age_days,
            max_entries=cfg.log_max_entries,
        )

    @property
    def pending(self) -> int:
        return len(self._buffer)

    # Writing

    async def log(
        self,
        level: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        service: Optional[str] = None,
        *,
        session_id: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> str:
        entry = LogEntry(
            level=normalize_level(level),
            message=message,
            service=service or self.service_name,
            metadata=dict(metadata or {}),
            session_id=session_id,
            trace_id=trace_id,
        )
        self._buffer.append(entry)
        if entry.level in IMMEDIATE_FLUSH_LEVELS or len(self._buffer) >= self.batch_size:
            await self.flush()
        return entry.id

    async def fatal(self, message: str, metadata: Optional[Dict[str, Any]] = None, service: Optional[str] = None) -> str:
        return await self.log("fatal", message, metadata, service)

    async def error(self, message: str, metadata: Optional[Dict[str, Any]] = None, service: Optional[str] = None) -> str:
        return await self.log("error", message, metadata, service)

    async def warn(self, message: str, metadata: Optional[Dict[str, Any]] = None, service: Optional[str] = None) -> str:
        return await self.log("warn", message, metadata, service)

    async def info(self, message: str, metadata: Optional[Dict[str, Any]] = None, service: Optional[str] = None) -> str:
        return await self.log("info", message, metadata, service)

    async def debug(self, message: str, metadata: Optional[Dict[str, Any]] = None, service: Optional[str] = None) -> str:
        return await self.log("debug", message, metadata, service)

    async def trace(self, message: str, metadata: Optional[Dict[str, Any]] = None, service: Optional[str] = None) -> str:
        return await self.log("trace", message, metadata, service)

    def _coerce(self, item: Union[LogEntry, Mapping[str, Any]]) -> LogEntry:
        if isinstance(item, LogEntry):
            item.level = normalize_level(item.level)
            return item
        entry = LogEntry(
            level=normalize_level(item.get("level", "info")),
            message=str(item["message"]),
            service=item.get("service") or self.service_name,
            metadata=dict(item.get("metadata") or {}),
            session_id=item.get("session_id"),
            trace_id=item.get("trace_id"),
        )
        if item.get("id"):
            entry.id = str(item["id"])
        if item.get("timestamp"):
            entry.timestamp = int(item["timestamp"])
        return entry

    async def log_batch(self, entries: Iterable[Union[LogEntry, Mapping[str, Any]]]) -> List[str]:
        batch = [self._coerce(item) for item in entries]
        self._buffer.extend(batch)
        if len(self._buffer) >= self.batch_size:
            await self.flush()
        return [entry.id for entry in batch]

    async def flush(self) -> int:
        """Write every buffered entry in one transaction and return how many were written.

        On failure the entries go back to the front of the buffer and the
        error propagates.
        """
        if not self._buffer:
            return 0
        batch = self._buffer
        self._buffer = []

        async def write() -> None:
            insert = self.db.statements.insert_log_entry()
            for entry in batch:
                await insert.run(*entry.as_params())

        try:
            await self.db.transaction(write)
        except Exception:
            self._buffer[:0] = batch
            logging.error("Failed to flush %s log entries", len(batch), exc_info=True)
            raise
        logging.debug("Flushed %s log entries", len(batch))
        return len(batch)

    async def shutdown(self) -> None:
        await self.flush()
        logging.info("Log service %s shut down", self.service_name)

    # Reading

    async def get_logs(
        self, log_filter: Optional[LogFilter] = None, limit: int = 100, offset: int = 0
    ) -> List[Dict[str, Any]]:
        f = log_filter or LogFilter()
        clauses: List[str] = []
        params: List[Any] = []

        levels = [normalize_level(level) for level in _as_list(f.level)]
        if levels:
            q = build_in_query("level IN ", levels)
            clauses.append(q.text)
            params.extend(q.params)
        services = _as_list(f.service)
        if services:
            q = build_in_query("service IN ", services)
            clauses.append(q.text)
            params.extend(q.params)
        if f.message:
            clauses.append("message LIKE ? ESCAPE '\\'")
            params.append(f"%{escape_like(f.message)}%")
        if f.start is not None:
            clauses.append("timestamp >= ?")
            params.append(int(f.start))
        if f.end is not None:
            clauses.append("timestamp <= ?")
            params.append(int(f.end))
        for key, value in f.metadata.items():
            clauses.append("json_extract(metadata, ?) = ?")
            params.extend([f"$.{key}", value])

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([int(limit), int(offset)])
        rows = await self.db.query(
            f"""
            SELECT id, timestamp, level, service, message, metadata,
                   process_id, session_id, trace_id, created_at
            FROM log_entries
            {where}
            ORDER BY timestamp DESC, rowid DESC
            LIMIT ? OFFSET ?
            """,
            params,
        )
        return [_log_out(r) for r in rows]

    async def query_range(self, start: int, end: int, limit: int = 100) -> List[Dict[str, Any]]:
        rows = await self.db.statements.get_log_entries().all(int(start), int(end), int(limit))
        return [_log_out(r) for r in rows]

    async def by_level(
        self, level: str, start: int = 0, end: Optional[int] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        end = now_ms() if end is None else end
        rows = await self.db.statements.get_log_entries_by_level().all(
            normalize_level(level), int(start), int(end), int(limit)
        )
        return [_log_out(r) for r in rows]

    async def by_service(
        self, service: str, start: int = 0, end: Optional[int] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        end = now_ms() if end is None else end
        rows = await self.db.statements.get_log_entries_by_service().all(service, int(start), int(end), int(limit))
        return [_log_out(r) for r in rows]

    async def get_recent_logs(self, minutes: int = 60, limit: int = 100) -> List[Dict[str, Any]]:
        return await self.get_logs(LogFilter(start=now_ms() - int(minutes) * 60 * 1000), limit)

    async def get_error_logs(self, since: Optional[int] = None, limit: int = 100) -> List[Dict[str, Any]]:
        return await self.get_logs(LogFilter(level=ERROR_LEVELS, start=since), limit)

    # Statistics

    async def get_stats(self) -> Dict[str, Any]:
        row = await self.db.query_one(
            """
            SELECT
              COUNT(*) AS total_entries,
              COUNT(DISTINCT service) AS services,
              MIN(timestamp) AS oldest_entry,
              MAX(timestamp) AS newest_entry
            FROM log_entries
            """
        ) or {}
        by_level = await self.db.query("SELECT level, COUNT(*) AS count FROM log_entries GROUP BY level")
        counts = {level: 0 for level in LOG_LEVELS}
        counts.update({r["level"]: int(r["count"]) for r in by_level})
        return {
            "total_entries": int(row.get("total_entries") or 0),
            "by_level": counts,
            "services": int(row.get("services") or 0),
            "oldest_entry": row.get("oldest_entry"),
            "newest_entry": row.get("newest_entry"),
            "pending": self.pending,
        }

    async def get_service_stats(self, since: Optional[int] = None) -> List[Dict[str, Any]]:
        """Per (service, level) counts with first/last occurrence; defaults to the last day."""
        since = now_ms() - DAY_MS if since is None else since
        return await self.db.statements.get_log_stats().all(int(since))

    async def get_analytics(self, start: Optional[int] = None, end: Optional[int] = None) -> Dict[str, Any]:
        """Totals for the window plus error trends over the last hour.

        ``error_rate`` is a percentage. A service is ``error`` above 10%
        errors in the last hour and ``degraded`` above 5%.
        """
        clauses: List[str] = []
        params: List[Any] = []
        if start is not None:
            clauses.append("timestamp >= ?")
            params.append(int(start))
        if end is not None:
            clauses.append("timestamp <= ?")
            params.append(int(end))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        level_rows = await self.db.query(
            f"SELECT level, COUNT(*) AS count FROM log_entries {where} GROUP BY level", params
        )
        service_rows = await self.db.query(
            f"SELECT service, COUNT(*) AS count FROM log_entries {where} GROUP BY service ORDER BY count DESC",
            params,
        )
        perf_where = f"{where} AND" if where else "WHERE"
        perf_rows = await self.db.query(
            f"""
            SELECT json_extract(metadata, '$.operation') AS operation,
                   AVG(CAST(json_extract(metadata, '$.duration') AS REAL)) AS avg_duration,
                   MAX(CAST(json_extract(metadata, '$.duration') AS REAL)) AS max_duration,
                   MAX(timestamp) AS timestamp
            FROM log_entries
            {perf_where} json_extract(metadata, '$.duration') IS NOT NULL
            GROUP BY operation
            ORDER BY max_duration DESC
            LIMIT 10
            """,
            params,
        )
        logs_by_level = {level: 0 for level in LOG_LEVELS}
        logs_by_level.update({r["level"]: int(r["count"]) for r in level_rows})
        logs_by_service = {r["service"]: int(r["count"]) for r in service_rows}
        recent_errors = await self.get_logs(LogFilter(level=ERROR_LEVELS, start=start, end=end), 10)

        now = now_ms()
        hour_rows = await self.db.query(
            """
            SELECT service,
                   COUNT(*) AS total,
                   SUM(CASE WHEN level IN ('error', 'fatal') THEN 1 ELSE 0 END) AS errors
            FROM log_entries
            WHERE timestamp >= ? AND timestamp <= ?
            GROUP BY service
            """,
            (now - HOUR_MS, now),
        )
        hour_total = sum(int(r["total"]) for r in hour_rows)
        hour_errors = sum(int(r["errors"] or 0) for r in hour_rows)
        per_service = {r["service"]: (int(r["total"]), int(r["errors"] or 0)) for r in hour_rows}

        service_health: Dict[str, str] = {}
        for service in logs_by_service:
            total, errors = per_service.get(service, (0, 0))
            rate = errors / total * 100.0 if total else 0.0
            if rate > 10:
                service_health[service] = "error"
            elif rate > 5:
                service_health[service] = "degraded"
            else:
                service_health[service] = "healthy"

        averages = [float(r["avg_duration"] or 0.0) for r in perf_rows]
        return {
            "total_logs": sum(logs_by_level.values()),
            "logs_by_level": logs_by_level,
            "logs_by_service": logs_by_service,
            "recent_errors": recent_errors,
            "performance": {
                "average_response_time": sum(averages) / len(averages) if averages else 0.0,
                "slowest_operations": [
                    {
                        "operation": r["operation"] or "unknown",
                        "duration": float(r["max_duration"] or 0.0),
                        "timestamp": r["timestamp"],
                    }
                    for r in perf_rows
                ],
            },
            "trends": {
                "error_rate": hour_errors / hour_total * 100.0 if hour_total else 0.0,
                "log_velocity": hour_total / 60.0,
                "service_health": service_health,
            },
        }

    # Maintenance

    async def clean_old_logs(self) -> Dict[str, Any]:
        stmts = self.db.statements

        async def purge() -> int:
            if self.retention_policy == "count_based":
                return (await stmts.delete_excess_log_entries().run(self.max_entries)).rowcount
            cutoff = now_ms() - self.max_age_days * DAY_MS
            return (await stmts.delete_old_log_entries().run(cutoff)).rowcount

        deleted = await self.db.transaction(purge)
        logging.info("Removed %s log entries (%s retention)", deleted, self.retention_policy)
        return {"deleted_count": deleted, "retention_policy": self.retention_policy}

    async def optimize(self) -> Dict[str, Any]:
        result = await self.clean_old_logs()
        await self.db.optimize()
        return result

    async def health_check(self) -> Dict[str, Any]:
        try:
            stats = await self.get_stats()
        except Exception as exc:
            logging.warning("Log service health check failed", exc_info=True)
            return {"healthy": False, "log_count": 0, "pending": self.pending, "last_error": str(exc)}
        return {"healthy": True, "log_count": stats["total_entries"], "pending": self.pending, "last_error": None}
