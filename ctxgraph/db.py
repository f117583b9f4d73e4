from __future__ import annotations

import asyncio
import contextvars
import logging
import os
import sqlite3
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import aiosqlite

from .config import CtxGraphConfig
from .errors import (
    ConnectionFailed,
    DatabaseError,
    MaintenanceError,
    SchemaError,
    TransactionError,
    TransactionTimeout,
)
from .schema import LEDGER_SQL, MIGRATIONS, Migration, pending_migrations, validate_migrations
from .statements import ExecuteResult, StatementCache, Statements, wrap_sqlite_error
from .text import trigram_similarity

T = TypeVar("T")

# Savepoint depth of the transaction the current task is running inside (0 = none).
_TX_DEPTH: contextvars.ContextVar[int] = contextvars.ContextVar("ctxgraph_tx_depth", default=0)


@dataclass(frozen=True)
class SQLQuery:
    text: str
    params: Tuple[Any, ...]


def build_in_query(prefix_sql: str, values: Sequence[Any], suffix_sql: str = "") -> SQLQuery:
    placeholders = ",".join(["?"] * len(values))
    sql = prefix_sql + "(" + placeholders + ")" + suffix_sql
    return SQLQuery(sql, tuple(values))


def _is_memory_path(db_path: str) -> bool:
    return db_path == ":memory:" or db_path.startswith("file:")


def ensure_db_permissions(db_path: str) -> None:
    if _is_memory_path(db_path):
        return
    db_path = os.path.abspath(db_path)
    db_dir = os.path.dirname(db_path)
    os.makedirs(db_dir, exist_ok=True)
    if not os.path.exists(db_path):
        flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
        try:
            fd = os.open(db_path, flags, 0o600)
            os.close(fd)
        except FileExistsError:
            pass
        except OSError:
            logging.warning("Failed to create database file %s securely.", db_path, exc_info=True)
    if os.name != "nt":
        try:
            os.chmod(db_path, 0o600)
        except OSError:
            logging.warning("Failed to chmod database file %s", db_path, exc_info=True)


class Database:
    """Owner of the single physical connection.

    ``connect()`` configures pragmas, registers SQL functions and applies
    migrations before the statement cache exists. Every mutation path runs
    through ``transaction()``/``atomic()``, which serialize top-level
    transactions on the shared connection; nested calls become savepoints.
    """

    def __init__(
        self,
        db_path: str,
        *,
        enable_wal: bool = True,
        enable_foreign_keys: bool = True,
        busy_timeout_s: float = 5.0,
        transaction_timeout_s: float = 5.0,
        max_prepared_statements: int = 100,
        cache_size: int = 10000,
        mmap_size: int = 268435456,
        verbose: bool = False,
        migrations: Sequence[Migration] = MIGRATIONS,
    ) -> None:
        self.db_path = db_path if _is_memory_path(db_path) else os.path.abspath(db_path)
        self.enable_wal = enable_wal
        self.enable_foreign_keys = enable_foreign_keys
        self.busy_timeout_s = float(busy_timeout_s)
        self.transaction_timeout_s = float(transaction_timeout_s)
        self.max_prepared_statements = max(1, int(max_prepared_statements))
        self.cache_size = int(cache_size)
        self.mmap_size = int(mmap_size)
        self.verbose = verbose
        self.migrations = list(migrations)
        self._conn: Optional[aiosqlite.Connection] = None
        self._cache: Optional[StatementCache] = None
        self._statements: Optional[Statements] = None
        self._lock = asyncio.Lock()
        self._last_query_ms: Optional[float] = None

    @classmethod
    def from_config(cls, cfg: CtxGraphConfig) -> "Database":
        return cls(
            cfg.db_path,
            enable_wal=cfg.enable_wal,
            enable_foreign_keys=cfg.enable_foreign_keys,
            busy_timeout_s=cfg.busy_timeout_s,
            transaction_timeout_s=cfg.transaction_timeout_s,
            max_prepared_statements=cfg.max_prepared_statements,
            cache_size=cfg.cache_size,
            mmap_size=cfg.mmap_size,
            verbose=cfg.verbose,
        )

    def _log(self, msg: str, *args: Any) -> None:
        if self.verbose:
            logging.info(msg, *args)
        else:
            logging.debug(msg, *args)

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    # Lifecycle

    @property
    def connected(self) -> bool:
        return self._conn is not None

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise ConnectionFailed("Database not connected")
        return self._conn

    @property
    def statements(self) -> Statements:
        if self._statements is None:
            raise ConnectionFailed("Database not connected")
        return self._statements

    @property
    def statement_cache(self) -> StatementCache:
        if self._cache is None:
            raise ConnectionFailed("Database not connected")
        return self._cache

    async def connect(self) -> None:
        if self._conn is not None:
            return
        try:
            validate_migrations(self.migrations)
        except ValueError as exc:
            raise SchemaError(str(exc), cause=exc) from exc
        try:
            ensure_db_permissions(self.db_path)
            conn = await aiosqlite.connect(
                self.db_path,
                isolation_level=None,
                timeout=self.busy_timeout_s,
                cached_statements=self.max_prepared_statements,
            )
        except (sqlite3.Error, OSError) as exc:
            raise ConnectionFailed(f"Failed to open database {self.db_path}", cause=exc) from exc

        conn.row_factory = aiosqlite.Row
        try:
            await self._configure(conn)
            await self._migrate(conn)
        except BaseException as exc:
            try:
                await conn.close()
            except sqlite3.Error:
                logging.warning("Failed to close half-open connection to %s", self.db_path, exc_info=True)
            if isinstance(exc, SchemaError) or not isinstance(exc, Exception):
                raise
            raise ConnectionFailed(f"Failed to initialize database {self.db_path}", cause=exc) from exc

        self._conn = conn
        self._cache = StatementCache(conn, self.max_prepared_statements, guard=self._serialized)
        self._statements = Statements(self._cache)
        self._log("Connected to %s", self.db_path)

    async def _configure(self, conn: aiosqlite.Connection) -> None:
        # Pragmas must precede any schema statement or explicit transaction.
        if self.enable_wal:
            await conn.execute("PRAGMA journal_mode = WAL")
        await conn.execute(f"PRAGMA foreign_keys = {'ON' if self.enable_foreign_keys else 'OFF'}")
        await conn.execute("PRAGMA synchronous = NORMAL")
        await conn.execute(f"PRAGMA cache_size = {self.cache_size}")
        await conn.execute("PRAGMA temp_store = MEMORY")
        await conn.execute(f"PRAGMA mmap_size = {self.mmap_size}")
        await conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_s * 1000)}")
        await conn.create_function("trigram_similarity", 2, trigram_similarity, deterministic=True)

    async def _current_version(self, conn: aiosqlite.Connection) -> int:
        async with conn.execute("SELECT MAX(version) FROM schema_migrations") as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    async def _migrate(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.executescript(LEDGER_SQL)
            current = await self._current_version(conn)
        except sqlite3.Error as exc:
            raise SchemaError("Failed to read schema_migrations", cause=exc) from exc
        latest = self.migrations[-1].version if self.migrations else 0
        if current > latest:
            raise SchemaError(f"Database schema version {current} is newer than supported version {latest}")

        for migration in pending_migrations(current, self.migrations):
            # Applied as a raw script; an explicit transaction here would
            # collide with the pragma setup on the same connection.
            try:
                await conn.executescript(migration.sql)
                await conn.execute(
                    "INSERT INTO schema_migrations(version, name) VALUES(?, ?)",
                    (migration.version, migration.name),
                )
            except sqlite3.Error as exc:
                raise SchemaError(
                    f"Migration {migration.version} ({migration.name}) failed", cause=exc
                ) from exc
            logging.info("Applied migration %s: %s", migration.version, migration.name)

    async def disconnect(self) -> None:
        if self._conn is None:
            return
        conn = self._conn
        if self._cache is not None:
            self._cache.clear()
        self._conn = None
        self._cache = None
        self._statements = None
        try:
            await conn.close()
        except sqlite3.Error as exc:
            raise ConnectionFailed(f"Failed to close database {self.db_path}", cause=exc) from exc
        self._log("Disconnected from %s", self.db_path)

    # Transactions

    @property
    def in_transaction(self) -> bool:
        return _TX_DEPTH.get() > 0

    @asynccontextmanager
    async def _serialized(self) -> AsyncIterator[None]:
        """Hold the transaction lock unless the current task already runs inside one.

        Every task shares one connection, so a statement issued while another
        task has a transaction open would otherwise run inside it.
        """
        if _TX_DEPTH.get():
            yield
            return
        async with self._lock:
            yield

    def _require_no_transaction(self, operation: str) -> None:
        if _TX_DEPTH.get():
            raise MaintenanceError(f"{operation} cannot run inside a transaction", code="IN_TRANSACTION")

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[aiosqlite.Connection]:
        """Commit-or-rollback scope; re-entrant via savepoints."""
        conn = self.connection
        depth = _TX_DEPTH.get()
        if depth:
            savepoint = f"ctxgraph_sp_{depth}"
            await conn.execute(f"SAVEPOINT {savepoint}")
            token = _TX_DEPTH.set(depth + 1)
            try:
                yield conn
            except BaseException:
                await conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                await conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                raise
            else:
                await conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            finally:
                _TX_DEPTH.reset(token)
        else:
            async with self._lock:
                try:
                    await conn.execute("BEGIN IMMEDIATE")
                except sqlite3.Error as exc:
                    raise TransactionError("Failed to begin transaction", cause=exc) from exc
                token = _TX_DEPTH.set(1)
                try:
                    yield conn
                except BaseException:
                    await self._rollback(conn)
                    raise
                else:
                    try:
                        await conn.execute("COMMIT")
                    except sqlite3.Error as exc:
                        await self._rollback(conn)
                        raise TransactionError("Failed to commit transaction", cause=exc) from exc
                finally:
                    _TX_DEPTH.reset(token)

    async def _rollback(self, conn: aiosqlite.Connection) -> None:
        if not conn.in_transaction:
            return
        try:
            await conn.execute("ROLLBACK")
        except sqlite3.Error:
            logging.warning("Rollback failed on %s", self.db_path, exc_info=True)

    async def _run_in_transaction(self, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            async with self.atomic():
                return await fn()
        except DatabaseError:
            raise
        except Exception as exc:
            raise TransactionError("Transaction failed", cause=exc) from exc

    async def transaction(self, fn: Callable[[], Awaitable[T]], *, timeout: Optional[float] = None) -> T:
        """Run ``fn`` in a transaction and return its result.

        The caller waits at most ``timeout`` seconds (default
        ``transaction_timeout_s``). On timeout ``TransactionTimeout`` is
        raised but the body is *not* cancelled: it keeps running on its own
        task and may still commit afterwards.
        """
        if self._conn is None:
            raise ConnectionFailed("Database not connected")
        if _TX_DEPTH.get():
            return await self._run_in_transaction(fn)

        timeout = self.transaction_timeout_s if timeout is None else float(timeout)
        task = asyncio.ensure_future(self._run_in_transaction(fn))
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError as exc:
            logging.warning("Transaction exceeded %.3fs; the caller stopped waiting but it may still commit.", timeout)
            task.add_done_callback(_report_late_transaction)
            raise TransactionTimeout(f"Transaction timed out after {timeout}s", cause=exc) from exc

    async def batch(self, operations: Sequence[Callable[[], Awaitable[Any]]], *, timeout: Optional[float] = None) -> List[Any]:
        async def run_all() -> List[Any]:
            return [await op() for op in operations]

        return await self.transaction(run_all, timeout=timeout)

    # Ad-hoc SQL

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        conn = self.connection
        start = time.perf_counter()
        try:
            async with self._serialized():
                async with conn.execute(sql, tuple(params)) as cursor:
                    rows = await cursor.fetchall()
        except sqlite3.Error as exc:
            raise wrap_sqlite_error(exc, "Query failed") from exc
        finally:
            self._last_query_ms = (time.perf_counter() - start) * 1000.0
        return [dict(r) for r in rows]

    async def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = await self.query(sql, params)
        return rows[0] if rows else None

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> ExecuteResult:
        conn = self.connection
        start = time.perf_counter()
        try:
            async with self._serialized():
                async with conn.execute(sql, tuple(params)) as cursor:
                    return ExecuteResult(rowcount=cursor.rowcount, lastrowid=cursor.lastrowid)
        except sqlite3.Error as exc:
            raise wrap_sqlite_error(exc, "Execute failed", code="EXECUTE_ERROR") from exc
        finally:
            self._last_query_ms = (time.perf_counter() - start) * 1000.0

    async def schema_version(self) -> int:
        row = await self.statements.get_current_schema_version().get()
        return int(row["version"]) if row else 0

    async def rollback_to(self, version: int) -> List[int]:
        """Undo applied migrations newer than ``version``, newest first."""
        self._require_no_transaction("rollback_to")
        conn = self.connection
        current = await self.schema_version()
        to_undo = [m for m in reversed(self.migrations) if version < m.version <= current]
        for migration in to_undo:
            if not migration.rollback:
                raise SchemaError(f"Migration {migration.version} ({migration.name}) has no rollback script")
        undone: List[int] = []
        async with self._lock:
            for migration in to_undo:
                try:
                    await conn.executescript(migration.rollback or "")
                    await conn.execute("DELETE FROM schema_migrations WHERE version = ?", (migration.version,))
                except sqlite3.Error as exc:
                    raise SchemaError(
                        f"Rollback of migration {migration.version} ({migration.name}) failed", cause=exc
                    ) from exc
                logging.info("Rolled back migration %s: %s", migration.version, migration.name)
                undone.append(migration.version)
        self.statement_cache.clear()
        return undone

    # Diagnostics (never raise)

    async def health_check(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "connected": self.connected,
            "writable": False,
            "last_query_duration_ms": self._last_query_ms,
            "prepared_statements_count": len(self._cache) if self._cache is not None else 0,
            "wal_checkpoint_status": None,
            "error": None,
        }
        try:
            conn = self.connection
            start = time.perf_counter()
            async with self._serialized():
                async with conn.execute("PRAGMA query_only") as cursor:
                    row = await cursor.fetchone()
                status["last_query_duration_ms"] = (time.perf_counter() - start) * 1000.0
                wal = None
                if self.enable_wal and not _is_memory_path(self.db_path) and not conn.in_transaction:
                    async with conn.execute("PRAGMA wal_checkpoint(PASSIVE)") as cursor:
                        wal = await cursor.fetchone()
            query_only = bool(row[0]) if row else False
            file_writable = _is_memory_path(self.db_path) or os.access(self.db_path, os.W_OK)
            status["writable"] = not query_only and file_writable
            if wal is not None:
                status["wal_checkpoint_status"] = {
                    "busy": int(wal[0]),
                    "log_frames": int(wal[1]),
                    "checkpointed_frames": int(wal[2]),
                }
        except Exception as exc:
            logging.warning("Health check failed for %s", self.db_path, exc_info=True)
            status["error"] = str(exc)
        return status

    async def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "entities": 0,
            "relations": 0,
            "log_entries": 0,
            "search_index_entries": 0,
            "database_size_bytes": 0,
            "last_updated": None,
            "error": None,
        }
        try:
            counts = await self.statements.health_check().get() or {}
            stats["entities"] = int(counts.get("entity_count") or 0)
            stats["relations"] = int(counts.get("relation_count") or 0)
            stats["log_entries"] = int(counts.get("log_count") or 0)
            stats["search_index_entries"] = int(counts.get("search_index_count") or 0)
            pages = await self.query_one(
                "SELECT page_count * page_size AS size FROM pragma_page_count(), pragma_page_size()"
            )
            stats["database_size_bytes"] = int((pages or {}).get("size") or 0)
            last = await self.query_one("SELECT MAX(updated_at) AS last_updated FROM entities")
            stats["last_updated"] = (last or {}).get("last_updated")
        except Exception as exc:
            logging.warning("Failed to collect stats for %s", self.db_path, exc_info=True)
            stats["error"] = str(exc)
        return stats

    # Maintenance (blocks the caller for its duration)

    async def backup(self, path: str) -> str:
        self._require_no_transaction("backup")
        conn = self.connection
        target_path = os.path.abspath(path)
        try:
            ensure_db_permissions(target_path)
            async with self._lock:
                async with aiosqlite.connect(target_path) as target:
                    await conn.backup(target)
        except (sqlite3.Error, OSError) as exc:
            raise MaintenanceError(f"Backup to {target_path} failed", code="BACKUP_ERROR", cause=exc) from exc
        self._log("Backed up %s to %s", self.db_path, target_path)
        return target_path

    async def optimize(self) -> None:
        self._require_no_transaction("optimize")
        conn = self.connection
        start = time.perf_counter()
        try:
            async with self._lock:
                await conn.execute("VACUUM")
                await conn.execute("ANALYZE")
        except sqlite3.Error as exc:
            raise MaintenanceError("Optimize failed", code="OPTIMIZE_ERROR", cause=exc) from exc
        self._log("Optimized %s in %.1fms", self.db_path, (time.perf_counter() - start) * 1000.0)

    async def checkpoint(self) -> Dict[str, int]:
        self._require_no_transaction("checkpoint")
        conn = self.connection
        try:
            async with self._lock:
                async with conn.execute("PRAGMA wal_checkpoint(TRUNCATE)") as cursor:
                    row = await cursor.fetchone()
        except sqlite3.Error as exc:
            raise MaintenanceError("WAL checkpoint failed", code="CHECKPOINT_ERROR", cause=exc) from exc
        if row is None:
            return {"busy": 0, "log_frames": 0, "checkpointed_frames": 0}
        return {"busy": int(row[0]), "log_frames": int(row[1]), "checkpointed_frames": int(row[2])}


def _report_late_transaction(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logging.warning("Timed-out transaction later failed: %s", exc)
    else:
        logging.info("Timed-out transaction later committed.")


async def create_database(cfg: CtxGraphConfig, *, connect: bool = True) -> Database:
    db = Database.from_config(cfg)
    if connect:
        await db.connect()
    return db
