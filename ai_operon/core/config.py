#!/usr/bin/env python3
"""
Configuration Management
Central configuration for the orchestrator, sandbox, tool servers and LLM service
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/settings.yaml"


# (env var, dot key, cast)
_ENV_OVERRIDES = [
    ("OPENROUTER_API_KEY", "llm.api_key", str),
    ("OPENAI_API_KEY", "llm.api_key", str),
    ("AI_DEFAULT_MODEL", "llm.model", str),
    ("AI_PLANNING_MODEL", "llm.planning_model", str),
    ("DOCKER_BASE_IMAGE", "sandbox.base_image", str),
    ("DOCKER_CONTAINER_PREFIX", "sandbox.container_prefix", str),
    ("DOCKER_MAX_RETRIES", "sandbox.max_retries", int),
    ("MAX_CONCURRENT_TASKS", "tasks.max_concurrent_tasks", int),
    ("LOG_LEVEL", "logging.level", str),
]


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge override into a copy of base, recursing into nested sections"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """
    Process-wide settings: built-in defaults, overlaid by settings.yaml,
    overlaid by environment variables. Read with dotted keys.
    """

    _instance: Optional['Config'] = None
    _config: Dict[str, Any] = {}
    _loaded: bool = False

    def __new__(cls) -> 'Config':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def load(self, config_path: Optional[str] = None) -> 'Config':
        """Load configuration from YAML file, filling gaps from defaults"""
        if self._loaded:
            return self

        config_path = config_path or os.getenv("AI_OPERON_CONFIG", DEFAULT_CONFIG_PATH)
        path = Path(config_path)
        if path.exists():
            with open(path, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f) or {}
            self._config = _deep_merge(self._defaults(), loaded)
            logger.info("Loaded configuration from %s", config_path)
        else:
            self._config = self._defaults()
            logger.debug("Using default configuration (no file at %s)", config_path)

        self._apply_env_overrides()
        self._loaded = True
        return self

    def _apply_env_overrides(self) -> None:
        for env_var, key, cast in _ENV_OVERRIDES:
            raw = os.getenv(env_var)
            if not raw:
                continue
            try:
                self._set(key, cast(raw))
            except ValueError:
                logger.warning("Ignoring invalid value for %s: %r", env_var, raw)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get config value by dot notation
        Example: config.get('sandbox.max_retries') -> 3
        """
        if not self._loaded:
            self.load()

        value = self._config
        for k in key.split('.'):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
            if value is None:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """Override one dotted key in memory only"""
        if not self._loaded:
            self.load()
        self._set(key, value)

    def _set(self, key: str, value: Any) -> None:
        keys = key.split('.')
        section = self._config
        for k in keys[:-1]:
            if not isinstance(section.get(k), dict):
                section[k] = {}
            section = section[k]
        section[keys[-1]] = value

    def get_section(self, section: str) -> Dict[str, Any]:
        """One top-level section, e.g. get_section("sandbox")"""
        if not self._loaded:
            self.load()
        return self._config.get(section, {})

    def _defaults(self) -> Dict[str, Any]:
        """Built-in settings; a settings file only needs the keys it changes"""
        return {
            "llm": {
                "provider": "openai_compatible",
                "api_base": "https://openrouter.ai/api/v1",
                "api_key": None,
                "model": "anthropic/claude-3-sonnet",
                "planning_model": "anthropic/claude-3-haiku",
                "image_model": "dall-e-3",
                "max_tokens": 4000,
                "temperature": 0.7,
                "timeout": 120
            },
            "orchestrator": {
                "progress_check_timeout_sec": 30,
                "finalization_timeout_sec": 60,
                "replan_interval": 3,
                "replan_min_steps": 2,
                "reasoning_persist_interval": 3,
                "enable_reasoning": True
            },
            "sandbox": {
                "base_image": "python:3.9-slim",
                "container_prefix": "operon-task-",
                "max_retries": 3,
                "base_delay_ms": 100,
                "max_delay_ms": 2000,
                "workdir": "/app",
                "mem_limit": "1g",
                "command_timeout_sec": 300
            },
            "tools": {
                "filesystem_max_actions": 20,
                "research_max_queries": 5,
                "research_results_per_query": 5,
                "http_timeout_sec": 15,
                "output_dir": "./.runtime/output"
            },
            "mcp": {
                "servers": {},
                "discovery_method": "tools/list",
                "call_method": "tools/call",
                "stop_grace_sec": 1.0,
                "request_timeout_sec": 60
            },
            "tasks": {
                "max_concurrent_tasks": 5,
                "rate_limit_window_sec": 900,
                "rate_limit_max": 100
            },
            "memory": {
                "reasoning_dir": "./.runtime/reasoning"
            },
            "logging": {
                "level": "INFO",
                "file": "./.runtime/logs/operon.log",
                "debug_dump": False
            }
        }

    def reload(self, config_path: Optional[str] = None) -> 'Config':
        """Drop the loaded settings and read them again"""
        self._loaded = False
        return self.load(config_path)

    def save(self, config_path: str = DEFAULT_CONFIG_PATH) -> None:
        """Write the effective settings (defaults included) as YAML"""
        path = Path(config_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(self._config, f, default_flow_style=False, sort_keys=False)
        logger.info("Saved configuration to %s", config_path)

    @property
    def all(self) -> Dict[str, Any]:
        """Deep copy of the effective settings"""
        if not self._loaded:
            self.load()
        return copy.deepcopy(self._config)


config = Config()


def get_config() -> Config:
    """The shared Config"""
    return config
