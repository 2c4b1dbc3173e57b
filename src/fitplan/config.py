"""YAML configuration for the plan-generation pipeline."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from .analysis import ACCEPTABLE_COMPLETENESS
from .models.gemini import DEFAULT_BASE_URL, DEFAULT_MODELS

__all__ = [
    "ConfigError",
    "ConversationConfig",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "GatewayConfig",
    "LedgerConfig",
    "PathsConfig",
    "PipelineConfig",
    "copy_config_template",
    "load_config",
    "write_config",
]

DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "gateway": {
        "api_key_env": "GEMINI_API_KEY",
        "base_url": DEFAULT_BASE_URL,
        "models": {tier.value: name for tier, name in DEFAULT_MODELS.items()},
        "max_attempts": 3,
        "retry_base_delay": 1.0,
        "request_timeout": 120,
        "resource_timeout": 180,
        "use_fallback": True,
    },
    "conversation": {
        "max_user_messages": 20,
        "acceptable_completeness": ACCEPTABLE_COMPLETENESS,
    },
    "ledger": {
        "retention_days": 7,
    },
    "routing": {},
    "paths": {
        "data": "data",
        "db_path": "data/fitplan.sqlite",
        "logs": "data/logs",
    },
}


class ConfigError(ValueError):
    """Raised when a configuration file is missing or malformed."""


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Config section '{name}' must be a mapping.")
    return value


@dataclass(slots=True)
class GatewayConfig:
    api_key_env: str = "GEMINI_API_KEY"
    base_url: str = DEFAULT_BASE_URL
    models: Dict[str, str] = field(default_factory=dict)
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    request_timeout: float = 120.0
    resource_timeout: float = 180.0
    use_fallback: bool = True


@dataclass(slots=True)
class ConversationConfig:
    max_user_messages: int = 20
    acceptable_completeness: float = ACCEPTABLE_COMPLETENESS


@dataclass(slots=True)
class LedgerConfig:
    retention_days: int = 7


@dataclass(slots=True)
class PathsConfig:
    data: Path = Path("data")
    db_path: Path = Path("data/fitplan.sqlite")
    logs: Path = Path("data/logs")


@dataclass(slots=True)
class PipelineConfig:
    """Typed view over the merged configuration mapping."""

    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    routing: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    paths: PathsConfig = field(default_factory=PathsConfig)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PipelineConfig":
        merged = _merge(copy_config_template(), data)
        gateway = _section(merged, "gateway")
        conversation = _section(merged, "conversation")
        ledger = _section(merged, "ledger")
        routing = _section(merged, "routing")
        paths = _section(merged, "paths")
        try:
            config = cls(
                gateway=GatewayConfig(
                    api_key_env=str(gateway["api_key_env"]),
                    base_url=str(gateway["base_url"]),
                    models={str(key): str(value) for key, value in dict(gateway["models"]).items()},
                    max_attempts=int(gateway["max_attempts"]),
                    retry_base_delay=float(gateway["retry_base_delay"]),
                    request_timeout=float(gateway["request_timeout"]),
                    resource_timeout=float(gateway["resource_timeout"]),
                    use_fallback=bool(gateway["use_fallback"]),
                ),
                conversation=ConversationConfig(
                    max_user_messages=int(conversation["max_user_messages"]),
                    acceptable_completeness=float(conversation["acceptable_completeness"]),
                ),
                ledger=LedgerConfig(retention_days=int(ledger["retention_days"])),
                routing={str(task): dict(values) for task, values in routing.items()},
                paths=PathsConfig(
                    data=Path(paths["data"]),
                    db_path=Path(paths["db_path"]),
                    logs=Path(paths["logs"]),
                ),
            )
        except (TypeError, ValueError) as error:
            raise ConfigError(f"Invalid configuration value: {error}") from error
        if config.gateway.max_attempts < 1:
            raise ConfigError("gateway.max_attempts must be at least 1.")
        if not 0.0 < config.conversation.acceptable_completeness <= 1.0:
            raise ConfigError("conversation.acceptable_completeness must be in (0, 1].")
        if config.conversation.max_user_messages < 1:
            raise ConfigError("conversation.max_user_messages must be at least 1.")
        return config


def load_config(config_path: Path | str) -> PipelineConfig:
    """Load YAML configuration from disk, merged onto the default template."""
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return PipelineConfig.from_mapping(data)


def write_config(config_path: Path | str, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)
