"""Tests for execution configuration defaults."""

import json

import pytest

from weft import config
from weft.config import DEFAULT_MAX_STEPS, ExecutionConfig


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the config file at a temp dir and clear WEFT_* variables."""
    path = tmp_path / "configuration.json"
    monkeypatch.setattr(config, "WEFT_CONFIG_FILE", path)
    for var in ("WEFT_MAX_STEPS", "WEFT_RUN_TIMEOUT", "WEFT_NODE_TIMEOUT", "WEFT_MAX_CONCURRENCY"):
        monkeypatch.delenv(var, raising=False)
    return path


def test_defaults_without_config():
    cfg = ExecutionConfig.load()
    assert cfg.max_steps == DEFAULT_MAX_STEPS
    assert cfg.run_timeout is None
    assert cfg.node_timeout is None
    assert cfg.max_concurrency is None


def test_config_file(isolated_config):
    isolated_config.write_text(
        json.dumps({"execution": {"max_steps": 50, "node_timeout": 2.5}}), encoding="utf-8"
    )
    cfg = ExecutionConfig.load()
    assert cfg.max_steps == 50
    assert cfg.node_timeout == 2.5


def test_constructor_ignores_config_file(isolated_config):
    isolated_config.write_text(json.dumps({"execution": {"max_steps": 50}}), encoding="utf-8")
    assert ExecutionConfig().max_steps == DEFAULT_MAX_STEPS


def test_config_file_read_once(isolated_config, monkeypatch):
    isolated_config.write_text(json.dumps({"execution": {"run_timeout": 30}}), encoding="utf-8")
    reads = []
    original = config.get_weft_config

    def counting():
        reads.append(1)
        return original()

    monkeypatch.setattr(config, "get_weft_config", counting)

    cfg = ExecutionConfig.load()

    assert cfg.run_timeout == 30.0
    assert len(reads) == 1


def test_env_overrides_file(isolated_config, monkeypatch):
    isolated_config.write_text(json.dumps({"execution": {"max_steps": 50}}), encoding="utf-8")
    monkeypatch.setenv("WEFT_MAX_STEPS", "7")
    monkeypatch.setenv("WEFT_MAX_CONCURRENCY", "4")

    cfg = ExecutionConfig.load()
    assert cfg.max_steps == 7
    assert cfg.max_concurrency == 4


def test_invalid_env_value_falls_back(monkeypatch):
    monkeypatch.setenv("WEFT_RUN_TIMEOUT", "soon")
    assert ExecutionConfig.load().run_timeout is None


def test_unreadable_file_ignored(isolated_config):
    isolated_config.write_text("{not json", encoding="utf-8")
    assert config.get_weft_config() == {}
    assert ExecutionConfig.load().max_steps == DEFAULT_MAX_STEPS


def test_explicit_values_validated():
    with pytest.raises(ValueError):
        ExecutionConfig(max_steps=0)
    with pytest.raises(ValueError):
        ExecutionConfig(max_concurrency=0)
