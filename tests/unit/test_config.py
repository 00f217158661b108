"""
Tests for the configuration singleton
"""

import yaml

from ai_operon.core.config import Config, config, get_config


def test_singleton():
    assert Config() is config
    assert get_config() is config


def test_defaults_without_file():
    assert config.get("sandbox.max_retries") == 3
    assert config.get("sandbox.base_delay_ms") == 100
    assert config.get("orchestrator.replan_interval") == 3
    assert config.get("mcp.discovery_method") == "tools/list"
    assert config.get("does.not.exist", "fallback") == "fallback"


def test_partial_file_is_merged_with_defaults(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.dump({"sandbox": {"max_retries": 5}, "llm": {"model": "local-model"}}))

    config.reload(str(path))

    assert config.get("sandbox.max_retries") == 5
    assert config.get("sandbox.workdir") == "/app"
    assert config.get("llm.model") == "local-model"
    assert config.get("llm.provider") == "openai_compatible"


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("DOCKER_MAX_RETRIES", "7")
    monkeypatch.setenv("AI_PLANNING_MODEL", "planner-x")
    monkeypatch.setenv("MAX_CONCURRENT_TASKS", "not-a-number")

    config.reload(str(tmp_path / "missing.yaml"))

    assert config.get("sandbox.max_retries") == 7
    assert config.get("llm.planning_model") == "planner-x"
    assert config.get("tasks.max_concurrent_tasks") == 5


def test_set_and_save_roundtrip(tmp_path):
    config.set("tasks.rate_limit_max", 10)
    config.set("custom.nested.value", "x")
    path = tmp_path / "out" / "settings.yaml"

    config.save(str(path))
    saved = yaml.safe_load(path.read_text())

    assert saved["tasks"]["rate_limit_max"] == 10
    assert saved["custom"]["nested"]["value"] == "x"


def test_all_returns_a_copy():
    snapshot = config.all
    snapshot["sandbox"]["max_retries"] = 99
    assert config.get("sandbox.max_retries") == 3
