"""Tests for configuration loading."""

import json

from graph_memory.config import Config, load_config


class TestDefaults:
    def test_defaults(self):
        cfg = Config()
        assert cfg.db_file == "graph.db"
        assert cfg.busy_timeout_ms == 5000
        assert cfg.api_host == "127.0.0.1"
        assert cfg.max_results == 20
        assert cfg.min_shared_entities == 1
        assert cfg.cooccurrence_boost == 0.1
        assert cfg.validate() == []

    def test_search_settings(self):
        settings = Config(max_results=5, min_shared_entities=0, cooccurrence_boost=0.25).search_settings()
        assert settings.max_results == 5
        assert settings.min_shared_entities == 0
        assert settings.cooccurrence_boost == 0.25


class TestOverlays:
    def test_env_overlay(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GRAPH_MEMORY_MAX_RESULTS", "7")
        monkeypatch.setenv("GRAPH_MEMORY_COOC_BOOST", "0.3")
        monkeypatch.setenv("GRAPH_MEMORY_ENABLED", "no")
        monkeypatch.setenv("GRAPH_MEMORY_API_KEY", "k")
        cfg = load_config()
        assert cfg.max_results == 7
        assert cfg.cooccurrence_boost == 0.3
        assert cfg.enabled is False
        assert cfg.api_key == "k"
        assert cfg.data_dir == str(tmp_path / "data")

    def test_bad_env_value_ignored(self, monkeypatch):
        monkeypatch.setenv("GRAPH_MEMORY_PORT", "not-a-port")
        assert load_config().api_port == 8788

    def test_json_overlay(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "min_shared_entities": 2,
            "skip_heartbeats": "false",
            "busy_timeout_ms": "oops",
            "unknown_key": 1,
        }))
        cfg = load_config(str(path))
        assert cfg.min_shared_entities == 2
        assert cfg.skip_heartbeats is False
        assert cfg.busy_timeout_ms == 5000
        assert not hasattr(cfg, "unknown_key")

    def test_env_wins_over_json(self, monkeypatch, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"max_results": 3}))
        monkeypatch.setenv("GRAPH_MEMORY_CONFIG", str(path))
        monkeypatch.setenv("GRAPH_MEMORY_MAX_RESULTS", "9")
        assert load_config().max_results == 9

    def test_data_dir_expanded(self, monkeypatch):
        monkeypatch.setenv("GRAPH_MEMORY_DATA_DIR", "~/graphs")
        assert not load_config().data_dir.startswith("~")


class TestValidate:
    def test_reports_every_problem(self):
        cfg = Config(api_port=0, max_results=0, min_shared_entities=-1,
                     cooccurrence_boost=-0.5, busy_timeout_ms=-1, db_file="a/b.db")
        assert len(cfg.validate()) == 6

    def test_zero_thresholds_are_valid(self):
        assert Config(min_shared_entities=0, cooccurrence_boost=0.0, busy_timeout_ms=0).validate() == []
