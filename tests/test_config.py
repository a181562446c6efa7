"""Tests for configuration loading."""
import pytest
import yaml
from unittest.mock import patch

from config import _deep_merge, _validate_config, load_config


def test_defaults_load():
    config = load_config()
    assert config["scheduler"]["flush_interval_seconds"] == 30
    assert config["rate_limit"]["window_ms"] == 900_000
    assert config["rate_limit"]["max_requests"] == 100
    assert config["rate_limit"]["blacklist_threshold"] == 200
    assert config["sink"]["base_url"] == ""


def test_override_file_merges(tmp_path):
    path = tmp_path / "local.yaml"
    path.write_text(yaml.safe_dump({"rate_limit": {"max_requests": 50}, "sink": {"base_url": "https://t"}}))
    config = load_config(str(path))
    assert config["rate_limit"]["max_requests"] == 50
    assert config["rate_limit"]["blacklist_threshold"] == 200
    assert config["sink"]["base_url"] == "https://t"


def test_env_overrides():
    with patch.dict("os.environ", {
        "TELEMON_DB_PATH": "/tmp/x.db",
        "TELEMON_SINK_URL": "https://telemetry.test",
        "TELEMON_FLUSH_INTERVAL": "10",
        "TELEMON_LOG_LEVEL": "DEBUG",
    }):
        config = load_config()
    assert config["database"]["path"] == "/tmp/x.db"
    assert config["sink"]["base_url"] == "https://telemetry.test"
    assert config["scheduler"]["flush_interval_seconds"] == 10
    assert config["logging"]["level"] == "DEBUG"


def test_invalid_threshold_rejected(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump({"rate_limit": {"max_requests": 300}}))
    with pytest.raises(ValueError, match="blacklist_threshold"):
        load_config(str(path))


def test_invalid_flush_interval_rejected(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump({"scheduler": {"flush_interval_seconds": 0}}))
    with pytest.raises(ValueError):
        load_config(str(path))


def test_deep_merge_keeps_siblings():
    merged = _deep_merge({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}})
    assert merged == {"a": {"x": 1, "y": 3}, "b": 1}


def test_config_path_from_env(tmp_path, monkeypatch):
    path = tmp_path / "env.yaml"
    path.write_text(yaml.safe_dump({"queue": {"retry_base_seconds": 0.5}}))
    monkeypatch.setenv("TELEMON_CONFIG", str(path))
    monkeypatch.setenv("TELEMON_RULES_PATH", "/etc/telemon/rules.yaml")
    config = load_config()
    assert config["queue"]["retry_base_seconds"] == 0.5
    assert config["alerts"]["rules_path"] == "/etc/telemon/rules.yaml"


def test_missing_section_rejected():
    with pytest.raises(ValueError, match="queue, scheduler"):
        _validate_config({"database": {}, "sink": {}, "rate_limit": {}, "alerts": {}})
