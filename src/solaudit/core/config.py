"""3-layer configuration system for solaudit.

Loads and merges configuration from:
1. Default settings (built-in)
2. Config file (./solaudit.yaml or --config PATH)
3. CLI parameters (override)
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Optional

import yaml

from ..models.agent import AgentKind, AgentSettings

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "solaudit.yaml"

DEFAULT_CONFIG: dict = {
    "ai": {
        "provider": "openrouter",
        "temperature": 0.1,
        "top_p": 0.9,
        "max_tokens": 4000,
        "timeout_seconds": 60,
        "retry_attempts": 3,
        "retry_delay_seconds": 1,
        "pricing": {
            "anthropic/claude-3.5-sonnet": 0.000015,
            "openai/gpt-4-turbo": 0.00001,
            "google/gemini-pro-1.5": 0.000005,
        },
        "openrouter": {
            "base_url": "https://openrouter.ai/api/v1",
            "api_key_env": "OPENROUTER_API_KEY",
            "title": "solaudit",
        },
        "openai": {
            "model": "gpt-4-turbo",
            "api_key_env": "OPENAI_API_KEY",
        },
        "anthropic": {
            "model": "claude-3-5-sonnet-20241022",
            "api_key_env": "ANTHROPIC_API_KEY",
        },
    },
    "agents": {
        "security": {
            "timeout": 120,
            "dependencies": [],
            "required": True,
            "priority": 1,
            "models": [
                "anthropic/claude-3.5-sonnet",
                "openai/gpt-4-turbo",
                "google/gemini-pro-1.5",
            ],
        },
        "gasOptimizer": {
            "timeout": 90,
            "dependencies": ["security"],
            "required": False,
            "priority": 2,
            "models": ["anthropic/claude-3.5-sonnet", "openai/gpt-4-turbo"],
        },
        "tokenomics": {
            "timeout": 100,
            "dependencies": ["security"],
            "required": False,
            "priority": 3,
            "models": ["anthropic/claude-3.5-sonnet", "openai/gpt-4-turbo"],
        },
    },
    "validation": {
        "min_length": 50,
        "max_length": 1_000_000,
    },
    "knowledge": {
        "enabled": True,
        "store_path": None,
        "embedding_model": "text-embedding-3-small",
        "api_key_env": "OPENAI_API_KEY",
        "limit": 5,
        "similarity_threshold": 0.6,
        "max_results": 20,
        "content_limit": 1000,
        "batch_size": 5,
        "batch_delay_seconds": 1,
    },
    "persistence": {
        "archive_dir": ".solaudit/audits",
    },
}


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts. Arrays are replaced, not merged."""
    result = {}
    for key in base:
        result[key] = base[key]
    for key, value in override.items():
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            result[key] = deep_merge(base_value, value)
        else:
            result[key] = value
    return result


def load_config_file(config_path: Optional[Path] = None) -> dict:
    """Load a YAML config file. Defaults to ./solaudit.yaml when present."""
    path = Path(config_path) if config_path else Path.cwd() / CONFIG_FILENAME
    if not path.exists():
        if config_path:
            logger.warning("Config file not found: %s", path)
        return {}
    try:
        content = path.read_text(encoding="utf-8-sig")  # utf-8-sig strips BOM
        data = yaml.safe_load(content) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Ignoring unreadable config %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config %s: top level is not a mapping", path)
        return {}
    return data


def get_effective_config(
    config_path: Optional[Path] = None,
    cli_overrides: Optional[dict] = None,
) -> dict:
    """Get the fully resolved configuration for an audit run."""
    config = copy.deepcopy(DEFAULT_CONFIG)

    file_config = load_config_file(config_path)
    if file_config:
        config = deep_merge(config, file_config)

    if cli_overrides:
        config = deep_merge(config, cli_overrides)

    return config


def agent_settings(config: dict) -> dict[AgentKind, AgentSettings]:
    """Resolve frozen per-agent execution settings from the agents section."""
    section = config.get("agents") or {}
    defaults = DEFAULT_CONFIG["agents"]
    settings: dict[AgentKind, AgentSettings] = {}
    for kind in AgentKind:
        raw = deep_merge(defaults[kind.value], section.get(kind.value) or {})
        deps = tuple(
            dep for dep in (AgentKind.from_name(d) for d in raw.get("dependencies") or [])
            if dep is not None and dep != kind
        )
        settings[kind] = AgentSettings(
            timeout=float(raw.get("timeout", 120)),
            dependencies=deps,
            required=bool(raw.get("required", False)),
            priority=int(raw.get("priority", 1)),
            models=tuple(raw.get("models") or ()),
        )
    return settings
