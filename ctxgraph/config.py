from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator


RETENTION_POLICIES = ("time_based", "count_based")


@dataclass
class CtxGraphConfig:
    # Storage
    db_path: str = "ctxgraph.db"
    enable_wal: bool = True
    enable_foreign_keys: bool = True
    busy_timeout_s: float = 5.0
    transaction_timeout_s: float = 5.0
    verbose: bool = False

    # Performance
    max_prepared_statements: int = 100
    cache_size: int = 10000
    mmap_size: int = 268435456

    # Search
    search_max_results: int = 1000
    search_default_limit: int = 50
    enable_fuzzy_search: bool = True
    fuzzy_threshold: float = 0.3
    enable_regex_search: bool = True
    regex_timeout_s: float = 1.0
    slow_query_ms: float = 100.0

    # Indexing behavior
    index_batch_size: int = 100
    index_rebuild_threshold: float = 0.9

    # Log entries
    log_service_name: str = "ctxgraph"
    log_batch_size: int = 100
    log_retention_policy: str = "time_based"  # "time_based" | "count_based"
    log_max_age_days: int = 30
    log_max_entries: int = 1_000_000


class AllowedConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Storage
    db_path: str = "ctxgraph.db"
    enable_wal: bool = True
    enable_foreign_keys: bool = True
    busy_timeout_s: float = 5.0
    transaction_timeout_s: float = 5.0
    verbose: bool = False

    # Performance
    max_prepared_statements: int = 100
    cache_size: int = 10000
    mmap_size: int = 268435456

    # Search
    search_max_results: int = 1000
    search_default_limit: int = 50
    enable_fuzzy_search: bool = True
    fuzzy_threshold: float = 0.3
    enable_regex_search: bool = True
    regex_timeout_s: float = 1.0
    slow_query_ms: float = 100.0

    # Indexing behavior
    index_batch_size: int = 100
    index_rebuild_threshold: float = 0.9

    # Log entries
    log_service_name: str = "ctxgraph"
    log_batch_size: int = 100
    log_retention_policy: str = "time_based"
    log_max_age_days: int = 30
    log_max_entries: int = 1_000_000

    @field_validator("fuzzy_threshold", "index_rebuild_threshold")
    @classmethod
    def validate_ratio(cls, value: float) -> float:
        if not 0.0 <= float(value) <= 1.0:
            raise ValueError("must be between 0 and 1")
        return value

    @field_validator(
        "max_prepared_statements",
        "search_max_results",
        "search_default_limit",
        "index_batch_size",
        "log_batch_size",
        "log_max_entries",
    )
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if int(value) < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("transaction_timeout_s", "busy_timeout_s", "regex_timeout_s")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if float(value) <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("log_retention_policy")
    @classmethod
    def validate_retention(cls, value: str) -> str:
        if value not in RETENTION_POLICIES:
            raise ValueError(f"log_retention_policy must be one of {', '.join(RETENTION_POLICIES)}")
        return value


def default_config_path() -> str:
    env_path = os.environ.get("CTXGRAPH_CONFIG_PATH")
    if env_path:
        return env_path
    return os.path.join(os.path.expanduser("~"), ".config", "ctxgraph", "ctxgraph.yaml")


def load_config(path: Optional[str] = None) -> CtxGraphConfig:
    """Load config from YAML.

    Default path: $CTXGRAPH_CONFIG_PATH, else ~/.config/ctxgraph/ctxgraph.yaml

    Example:

        db_path: .context-kit/knowledge-graph.db
        fuzzy_threshold: 0.4
        log_retention_policy: count_based
        log_max_entries: 50000
    """

    if path is None:
        path = default_config_path()

    if not os.path.exists(path):
        cfg = CtxGraphConfig()
        cfg.db_path = os.path.abspath(cfg.db_path)
        return cfg
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid configuration: expected a mapping in {path}")

    try:
        validated = AllowedConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc

    cfg = CtxGraphConfig(**validated.model_dump())
    cfg.db_path = os.path.abspath(os.path.expanduser(cfg.db_path))
    if cfg.search_default_limit > cfg.search_max_results:
        logging.warning(
            "search_default_limit (%s) exceeds search_max_results (%s); clamping.",
            cfg.search_default_limit,
            cfg.search_max_results,
        )
        cfg.search_default_limit = cfg.search_max_results

    return cfg
