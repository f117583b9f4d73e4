from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from .config import CtxGraphConfig
from .db import Database
from .errors import InvalidPattern, PatternDisabled, SearchError
from .parser import ParsedQuery, PatternInfo, PatternType, QueryParser, compile_regex
from .text import trigrams

SLOW_QUERY_LOG_SIZE = 100


def escape_like(value: str) -> str:
    """Escape LIKE metacharacters; statements declare ``ESCAPE '\\'``."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def escape_glob(value: str) -> str:
    return re.sub(r"([*?\[])", r"[\1]", value)


def path_glob_to_like(pattern: str) -> str:
    """``src/*`` -> ``src/%``, ``*/index.ts`` -> ``%/index.ts``, no ``*`` -> exact match."""
    return "%".join(escape_like(part) for part in pattern.split("*"))


@dataclass
class SearchOptions:
    limit: Optional[int] = None
    offset: int = 0
    case_sensitive: bool = False


Handler = Callable[[ParsedQuery, SearchOptions], Awaitable[List[Dict[str, Any]]]]


@dataclass
class SearchEngine:
    """Executes parsed queries against ``search_index``.

    Each pattern type maps to one fixed strategy; composite queries run
    every filter independently and intersect the results by entity id.
    Results are plain dicts with ``entity_id``, ``original_name``,
    ``entity_type`` and ``file_path``, plus ``similarity_score`` for fuzzy
    and ``relevance_score`` for free-text queries.
    """

    db: Database
    max_results: int = 1000
    default_limit: int = 50
    enable_fuzzy_search: bool = True
    fuzzy_threshold: float = 0.3
    enable_regex_search: bool = True
    regex_timeout_s: float = 1.0
    slow_query_ms: float = 100.0
    parser: QueryParser = field(default_factory=QueryParser)

    def __post_init__(self) -> None:
        self._handlers: Dict[PatternType, Handler] = {
            PatternType.WILDCARD: self._search_all,
            PatternType.PREFIX: self._search_prefix,
            PatternType.SUFFIX: self._search_suffix,
            PatternType.CONTAINS: self._search_contains,
            PatternType.EXTENSION: self._search_extension,
            PatternType.TYPE: self._search_type,
            PatternType.EXACT: self._search_exact,
            PatternType.PATH: self._search_path,
            PatternType.FUZZY: self._search_fuzzy,
            PatternType.REGEX: self._search_regex,
            PatternType.TEXT: self._search_text,
            PatternType.COMPOSITE: self._search_composite,
        }
        missing = set(PatternType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No search strategy for pattern types: {sorted(m.value for m in missing)}")
        self.reset_stats()

    @classmethod
    def from_config(cls, db: Database, cfg: CtxGraphConfig) -> "SearchEngine":
        return cls(
            db=db,
            max_results=cfg.search_max_results,
            default_limit=cfg.search_default_limit,
            enable_fuzzy_search=cfg.enable_fuzzy_search,
            fuzzy_threshold=cfg.fuzzy_threshold,
            enable_regex_search=cfg.enable_regex_search,
            regex_timeout_s=cfg.regex_timeout_s,
            slow_query_ms=cfg.slow_query_ms,
        )

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> List[Dict[str, Any]]:
        start = time.perf_counter()
        parsed = self.parser.parse_composite(query)
        opts = self._normalize_options(options)
        results = await self._execute(parsed, opts)
        self._record(query, parsed, (time.perf_counter() - start) * 1000.0)
        return results

    async def execute(self, parsed: ParsedQuery, options: Optional[SearchOptions] = None) -> List[Dict[str, Any]]:
        """Run an already-parsed query; statistics are not recorded."""
        return await self._execute(parsed, self._normalize_options(options))

    def _normalize_options(self, options: Optional[SearchOptions]) -> SearchOptions:
        options = options or SearchOptions()
        limit = min(int(options.limit or self.default_limit), int(self.max_results))
        return SearchOptions(
            limit=max(1, limit),
            offset=max(0, int(options.offset or 0)),
            case_sensitive=bool(options.case_sensitive),
        )

    async def _execute(self, parsed: ParsedQuery, opts: SearchOptions) -> List[Dict[str, Any]]:
        return await self._handlers[parsed.type](parsed, opts)

    # Strategies

    async def _search_all(self, parsed: ParsedQuery, opts: SearchOptions) -> List[Dict[str, Any]]:
        return await self.db.statements.search_all().all(opts.limit, opts.offset)

    async def _search_name_like(
        self, like_pattern: str, glob_pattern: str, statement: str, opts: SearchOptions
    ) -> List[Dict[str, Any]]:
        stmts = self.db.statements
        if opts.case_sensitive:
            return await stmts.search_by_name_glob().all(glob_pattern, opts.limit, opts.offset)
        return await getattr(stmts, statement)().all(like_pattern, opts.limit, opts.offset)

    async def _search_prefix(self, parsed: ParsedQuery, opts: SearchOptions) -> List[Dict[str, Any]]:
        v = parsed.value
        return await self._search_name_like(
            escape_like(v.lower()) + "%", escape_glob(v) + "*", "search_by_prefix", opts
        )

    async def _search_suffix(self, parsed: ParsedQuery, opts: SearchOptions) -> List[Dict[str, Any]]:
        v = parsed.value
        return await self._search_name_like(
            "%" + escape_like(v.lower()), "*" + escape_glob(v), "search_by_suffix", opts
        )

    async def _search_contains(self, parsed: ParsedQuery, opts: SearchOptions) -> List[Dict[str, Any]]:
        v = parsed.value
        return await self._search_name_like(
            "%" + escape_like(v.lower()) + "%", "*" + escape_glob(v) + "*", "search_by_contains", opts
        )

    async def _search_extension(self, parsed: ParsedQuery, opts: SearchOptions) -> List[Dict[str, Any]]:
        extension = parsed.value.lstrip(".").lower()
        return await self.db.statements.search_by_extension().all(extension, opts.limit, opts.offset)

    async def _search_type(self, parsed: ParsedQuery, opts: SearchOptions) -> List[Dict[str, Any]]:
        return await self.db.statements.search_by_type().all(parsed.value, opts.limit, opts.offset)

    async def _search_exact(self, parsed: ParsedQuery, opts: SearchOptions) -> List[Dict[str, Any]]:
        stmts = self.db.statements
        if opts.case_sensitive:
            return await stmts.search_exact_case_sensitive().all(parsed.value, opts.limit, opts.offset)
        return await stmts.search_exact().all(parsed.value.lower(), opts.limit, opts.offset)

    async def _search_path(self, parsed: ParsedQuery, opts: SearchOptions) -> List[Dict[str, Any]]:
        pattern = path_glob_to_like(parsed.value)
        return await self.db.statements.search_by_path().all(pattern, opts.limit, opts.offset)

    async def _search_fuzzy(self, parsed: ParsedQuery, opts: SearchOptions) -> List[Dict[str, Any]]:
        if not self.enable_fuzzy_search:
            raise PatternDisabled("Fuzzy search is disabled")
        query_trigrams = trigrams(parsed.value.lower())
        if not query_trigrams:
            return []
        return await self.db.statements.search_fuzzy().all(
            query_trigrams, float(self.fuzzy_threshold), opts.limit, opts.offset
        )

    async def _search_regex(self, parsed: ParsedQuery, opts: SearchOptions) -> List[Dict[str, Any]]:
        if not self.enable_regex_search:
            raise PatternDisabled("Regex search is disabled")
        compiled = compile_regex(parsed.value, parsed.regex_flags)
        candidates = await self.db.statements.search_regex_candidates().all(opts.limit, opts.offset)

        def _filter() -> List[Dict[str, Any]]:
            return [c for c in candidates if compiled.search(c["original_name"])]

        # The worker thread cannot be interrupted; on timeout it finishes in the background.
        try:
            return await asyncio.wait_for(asyncio.to_thread(_filter), self.regex_timeout_s)
        except asyncio.TimeoutError as exc:
            raise InvalidPattern(
                f"Regex /{parsed.value}/ exceeded {self.regex_timeout_s}s", cause=exc
            ) from exc

    async def _search_text(self, parsed: ParsedQuery, opts: SearchOptions) -> List[Dict[str, Any]]:
        value = escape_like(parsed.value.lower())
        return await self.db.statements.search_text().all(
            value + "%", "%" + value + "%", opts.limit, opts.offset
        )

    async def _search_composite(self, parsed: ParsedQuery, opts: SearchOptions) -> List[Dict[str, Any]]:
        if not parsed.filters:
            return []
        wide = SearchOptions(limit=self.max_results, offset=0, case_sensitive=opts.case_sensitive)
        first, *rest = parsed.filters
        results = await self._execute(first, wide)
        for sub in rest:
            ids = {r["entity_id"] for r in await self._execute(sub, wide)}
            results = [r for r in results if r["entity_id"] in ids]
        return results[opts.offset : opts.offset + (opts.limit or self.default_limit)]

    # Diagnostics

    def _record(self, query: str, parsed: ParsedQuery, duration_ms: float) -> None:
        self._total_queries += 1
        self._total_time_ms += duration_ms
        self._type_counts[parsed.type.value] += 1
        if duration_ms > self.slow_query_ms:
            logging.warning("Slow search query %r (%s) took %.1fms", query, parsed.type.value, duration_ms)
            self._slow_queries.append(
                {
                    "query": query,
                    "type": parsed.type.value,
                    "duration_ms": duration_ms,
                    "timestamp": int(time.time() * 1000),
                }
            )

    def get_stats(self) -> Dict[str, Any]:
        average = self._total_time_ms / self._total_queries if self._total_queries else 0.0
        return {
            "total_queries": self._total_queries,
            "average_query_time_ms": average,
            "popular_query_types": [
                {"type": t, "count": c} for t, c in self._type_counts.most_common()
            ],
            "slow_queries": list(self._slow_queries),
        }

    def reset_stats(self) -> None:
        self._total_queries = 0
        self._total_time_ms = 0.0
        self._type_counts: Counter = Counter()
        self._slow_queries: Deque[Dict[str, Any]] = deque(maxlen=SLOW_QUERY_LOG_SIZE)

    async def explain_query(self, query: str) -> Dict[str, Any]:
        parsed = self.parser.parse_composite(query)
        info: PatternInfo = self.parser.get_pattern_info(parsed)
        problems = self.parser.validate(parsed)
        estimated: Optional[int] = None
        if not problems:
            try:
                rows = await self._execute(parsed, SearchOptions(limit=self.max_results))
                estimated = len(rows)
            except SearchError as exc:
                problems.append(str(exc))
        return {
            "parsed_query": parsed_query_to_dict(parsed),
            "pattern_info": {
                "description": info.description,
                "expected_results": info.expected_results,
                "performance": info.performance,
            },
            "estimated_results": estimated,
            "errors": problems,
        }


def parsed_query_to_dict(parsed: ParsedQuery) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "type": parsed.type.value,
        "value": parsed.value,
        "modifiers": [{"type": m.type, "field": m.field, "value": m.value} for m in parsed.modifiers],
        "raw": parsed.raw,
    }
    if parsed.filters:
        out["filters"] = [parsed_query_to_dict(f) for f in parsed.filters]
    return out
