"""
Settlement Configuration System

Unified configuration management with YAML files, environment variables,
schema validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (SETTLEMENT_*)
    2. Runtime overrides
    3. User config file (~/.settlement/config.yaml)
    4. Project config file (./settlement.yaml)
    5. Default values

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar, Union

import yaml
from jsonschema import Draft202012Validator

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def is_valid(self, value: T) -> bool:
        return self.validator is None or bool(self.validator(value))

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if not self.is_valid(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        return value  # type: ignore

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class StrategyConfig:
    """Configuration for the Strategy Controller."""
    name: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="Cross-Domain Yield Strategy",
        env_var="SETTLEMENT_STRATEGY_NAME",
        description="Human-readable strategy name",
        validator=lambda x: bool(x),
    ))
    max_value_staleness_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3600,
        env_var="SETTLEMENT_MAX_STALENESS",
        description="Seconds after which the last remote valuation is stale",
        validator=lambda x: x > 0,
    ))
    estimated_apy_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=450,
        env_var="SETTLEMENT_ESTIMATED_APY_BPS",
        description="Advertised yield in basis points",
        validator=lambda x: 0 <= x <= 10000,
    ))


@dataclass
class TransportConfig:
    """Configuration for cross-domain transports."""
    min_bridge_amount: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1_000_000,  # 1.000000 in 6-decimal base units
        env_var="SETTLEMENT_MIN_BRIDGE_AMOUNT",
        description="Smallest deposit the transport accepts (base units)",
        validator=lambda x: x >= 0,
    ))
    route_fee_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="SETTLEMENT_ROUTE_FEE_BPS",
        description="Swap-and-route fee in basis points",
        validator=lambda x: 0 <= x < 10000,
    ))
    home_domain_id: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=6,
        env_var="SETTLEMENT_HOME_DOMAIN",
        description="Transport domain id of the home ledger",
        validator=lambda x: x >= 0,
    ))
    remote_domain_id: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=26,
        env_var="SETTLEMENT_REMOTE_DOMAIN",
        description="Transport domain id of the remote ledger",
        validator=lambda x: x >= 0,
    ))


@dataclass
class KeeperConfig:
    """Configuration for the keeper relay."""
    retry_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="SETTLEMENT_KEEPER_RETRIES",
        description="Attempts per relayed command",
        validator=lambda x: x >= 1,
    ))
    retry_base_delay_ms: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=500,
        env_var="SETTLEMENT_KEEPER_RETRY_DELAY_MS",
        description="Base backoff delay in milliseconds",
        validator=lambda x: x >= 0,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="SETTLEMENT_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="SETTLEMENT_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class SettlementConfig:
    """
    Root configuration for the settlement engine.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    keeper: KeeperConfig = field(default_factory=KeeperConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False)


def config_file_schema() -> Dict[str, Any]:
    """JSON Schema (2020-12) for settlement YAML files, derived from the defaults."""
    def section_schema(obj: Any) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        for name in obj.__dataclass_fields__:
            attr = getattr(obj, name)
            if isinstance(attr, ConfigValue):
                properties[name] = {"type": _json_type(attr.default)}
            elif hasattr(attr, "__dataclass_fields__"):
                properties[name] = section_schema(attr)
        return {"type": "object", "properties": properties, "additionalProperties": False}

    schema = section_schema(SettlementConfig())
    schema["$schema"] = "https://json-schema.org/draft/2020-12/schema"
    return schema


def _json_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    return "string"


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = SettlementConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[SettlementConfig], None]] = []
        self._validator = Draft202012Validator(config_file_schema())
        self._initialized = True

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests)."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> SettlementConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f)

        if data:
            self.load_from_dict(data)
            if path not in self._config_paths:
                self._config_paths.append(path)

    def load_from_dict(self, data: Dict[str, Any]) -> None:
        """Validate a raw mapping against the file schema, then apply it."""
        errors = sorted(self._validator.iter_errors(data), key=lambda e: list(e.path))
        if errors:
            details = "; ".join(
                f"{'.'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errors
            )
            raise ConfigValidationError(f"Invalid configuration: {details}")
        self._apply_dict(data)

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path("settlement.yaml"),
            Path("config/settlement.yaml"),
            Path.home() / ".settlement" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                self.load_from_file(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """
        Apply dictionary values to configuration.

        Every value is validated before any is applied; a rejected mapping
        leaves the configuration untouched.
        """
        leaves: List[Tuple[str, ConfigValue, Any]] = []

        def collect(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if hasattr(config_obj, key):
                    attr = getattr(config_obj, key)
                    if isinstance(attr, ConfigValue):
                        leaves.append((f"{prefix}{key}", attr, value))
                    elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                        collect(attr, value, f"{prefix}{key}.")

        collect(self._config, data, "")
        invalid = [path for path, config_value, value in leaves if not config_value.is_valid(value)]
        if invalid:
            raise ConfigValidationError(f"Invalid value for config: {', '.join(invalid)}")

        for _, config_value, value in leaves:
            config_value.set(value)

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("strategy.max_value_staleness_seconds", 1800)
        """
        parts = path.split(".")
        obj: Any = self._config

        for part in parts[:-1]:
            obj = getattr(obj, part, None)
            if obj is None:
                raise ConfigError(f"Invalid config path: {path}")

        attr = getattr(obj, parts[-1], None)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("transport.min_bridge_amount")
        """
        obj: Any = self._config
        for part in path.split("."):
            obj = getattr(obj, part, None)
            if obj is None:
                raise ConfigError(f"Invalid config path: {path}")

        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[SettlementConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except (TypeError, ValueError) as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors


def get_config() -> SettlementConfig:
    """Get the current settlement configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
