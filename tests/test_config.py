import os

import pytest

from ctxgraph.config import CtxGraphConfig, default_config_path, load_config


def test_missing_file_returns_defaults(tmp_path):
    cfg = load_config(str(tmp_path / "missing.yaml"))
    assert isinstance(cfg, CtxGraphConfig)
    assert cfg.fuzzy_threshold == 0.3
    assert cfg.search_default_limit == 50
    assert cfg.search_max_results == 1000
    assert os.path.isabs(cfg.db_path)


def test_yaml_overrides_defaults(tmp_path):
    path = tmp_path / "ctxgraph.yaml"
    path.write_text(
        "db_path: data/kg.db\n"
        "fuzzy_threshold: 0.4\n"
        "log_retention_policy: count_based\n"
        "log_max_entries: 50000\n",
        encoding="utf-8",
    )
    cfg = load_config(str(path))
    assert cfg.fuzzy_threshold == 0.4
    assert cfg.log_retention_policy == "count_based"
    assert cfg.log_max_entries == 50000
    assert os.path.isabs(cfg.db_path)
    assert cfg.db_path.endswith(os.path.join("data", "kg.db"))


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "ctxgraph.yaml"
    path.write_text("", encoding="utf-8")
    cfg = load_config(str(path))
    assert cfg.enable_regex_search is True


def test_unknown_key_rejected(tmp_path):
    path = tmp_path / "ctxgraph.yaml"
    path.write_text("no_such_option: 1\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid configuration"):
        load_config(str(path))


@pytest.mark.parametrize(
    "line",
    [
        "fuzzy_threshold: 1.5",
        "index_rebuild_threshold: -0.1",
        "transaction_timeout_s: 0",
        "search_max_results: 0",
        "log_retention_policy: forever",
    ],
)
def test_invalid_values_rejected(tmp_path, line):
    path = tmp_path / "ctxgraph.yaml"
    path.write_text(line + "\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid configuration"):
        load_config(str(path))


def test_non_mapping_document_rejected(tmp_path):
    path = tmp_path / "ctxgraph.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError, match="expected a mapping"):
        load_config(str(path))


def test_default_limit_clamped_to_max_results(tmp_path):
    path = tmp_path / "ctxgraph.yaml"
    path.write_text("search_max_results: 20\nsearch_default_limit: 50\n", encoding="utf-8")
    cfg = load_config(str(path))
    assert cfg.search_default_limit == 20


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("fuzzy_threshold: 0.5\n", encoding="utf-8")
    monkeypatch.setenv("CTXGRAPH_CONFIG_PATH", str(path))
    assert default_config_path() == str(path)
    assert load_config().fuzzy_threshold == 0.5
