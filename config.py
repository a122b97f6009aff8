"""
Configuration management for Conductor.

This module provides centralized configuration with environment variable
validation and sensible defaults. A Config is built once at process start
and passed by reference into the playbook, the RPC client factory and the
credential helpers.
"""
import os
import sys
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import yaml  # type: ignore[import-untyped]

from Conductor.Core.errors import UserError

logger = logging.getLogger(__name__)

_UNSET = object()


class LookupStatus(str, Enum):
    """Outcome of an option lookup."""

    FOUND = "found"
    DEFAULTED = "defaulted"
    MISSING = "missing"


@dataclass(frozen=True)
class OptionLookup:
    """Result of looking up a plugin option.

    Callers pick fail-fast behaviour with unwrap() or inspect status
    to fall back on their own terms.
    """

    key: str
    status: LookupStatus
    value: Any = None

    @property
    def found(self) -> bool:
        return self.status == LookupStatus.FOUND

    def unwrap(self) -> Any:
        """Return the value, raising UserError when the option is missing."""
        if self.status == LookupStatus.MISSING:
            raise UserError(f"No plugin.{self.key} configuration option given")
        return self.value


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw != "" else default
    except ValueError:
        logger.warning(f"Ignoring non integer value for {name}: {raw!r}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    try:
        return float(raw) if raw != "" else default
    except ValueError:
        logger.warning(f"Ignoring non numeric value for {name}: {raw!r}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes")


@dataclass
class ControllerConfig:
    """RPC controller connection settings."""
    scheme: str
    timeout_seconds: float

    @classmethod
    def from_env(cls) -> "ControllerConfig":
        """Create configuration from environment variables."""
        return cls(
            scheme=os.environ.get("CONDUCTOR_CONTROLLER_SCHEME", "https"),
            timeout_seconds=_env_float("CONDUCTOR_CONTROLLER_TIMEOUT", 30.0),
        )

    def validate(self) -> list:
        """Validate configuration. Returns list of error messages."""
        errors = []
        if self.scheme not in ("http", "https"):
            errors.append(
                f"CONDUCTOR_CONTROLLER_SCHEME must be http or https, got {self.scheme}"
            )
        if self.timeout_seconds <= 0:
            errors.append("CONDUCTOR_CONTROLLER_TIMEOUT must be positive")
        return errors


@dataclass
class SSLConfig:
    """Client certificate settings."""
    identity: str
    ssl_dir: str
    check_ssl: bool

    @classmethod
    def from_env(cls) -> "SSLConfig":
        """Create configuration from environment variables."""
        return cls(
            identity=os.environ.get("CONDUCTOR_IDENTITY", "") or _hostname(),
            ssl_dir=os.environ.get("CONDUCTOR_SSL_DIR", ""),
            check_ssl=_env_bool("CONDUCTOR_CHECK_SSL", True),
        )

    def validate(self) -> list:
        """Validate configuration. Returns list of error messages."""
        errors = []
        if not self.identity:
            errors.append("CONDUCTOR_IDENTITY is required")
        return errors


@dataclass
class RunConfig:
    """Defaults for playbook runs."""
    batch_size: int
    retry_count: int
    retry_backoff_seconds: float
    rpc_timeout_seconds: int

    @classmethod
    def from_env(cls) -> "RunConfig":
        """Create configuration from environment variables."""
        return cls(
            batch_size=_env_int("CONDUCTOR_BATCH_SIZE", 50),
            retry_count=_env_int("CONDUCTOR_RETRY_COUNT", 2),
            retry_backoff_seconds=_env_float("CONDUCTOR_RETRY_BACKOFF", 5.0),
            rpc_timeout_seconds=_env_int("CONDUCTOR_RPC_TIMEOUT", 60),
        )

    def validate(self) -> list:
        """Validate configuration. Returns list of error messages."""
        errors = []
        if self.batch_size < 1:
            errors.append("CONDUCTOR_BATCH_SIZE must be at least 1")
        if self.retry_count < 0:
            errors.append("CONDUCTOR_RETRY_COUNT must not be negative")
        if self.retry_backoff_seconds < 0:
            errors.append("CONDUCTOR_RETRY_BACKOFF must not be negative")
        if self.rpc_timeout_seconds < 1:
            errors.append("CONDUCTOR_RPC_TIMEOUT must be at least 1")
        return errors


def _hostname() -> str:
    import socket

    return socket.getfqdn()


def load_options_file(path: Optional[str]) -> Dict[str, Any]:
    """
    Load plugin options from a YAML file.

    Nested mappings are flattened into dotted keys, so
    ``controller: {host: x}`` becomes ``controller.host``.

    Args:
        path: File to read, None or empty for no file

    Returns:
        Flat dictionary of options
    """
    if not path:
        return {}

    if not os.path.exists(path):
        logger.warning(f"Configuration file {path} does not exist")
        return {}

    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    if not isinstance(data, dict):
        logger.warning(f"Configuration file {path} is not a mapping, ignoring it")
        return {}

    options: Dict[str, Any] = {}

    def flatten(prefix: str, value: Any) -> None:
        if isinstance(value, dict):
            for k, v in value.items():
                flatten(f"{prefix}.{k}" if prefix else str(k), v)
        else:
            options[prefix] = value

    flatten("", data)
    return options


@dataclass
class Config:
    """Complete application configuration."""
    controller: ControllerConfig = field(default_factory=ControllerConfig.from_env)
    ssl: SSLConfig = field(default_factory=SSLConfig.from_env)
    run: RunConfig = field(default_factory=RunConfig.from_env)
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "Config":
        """Create complete configuration from environment variables."""
        return cls(
            controller=ControllerConfig.from_env(),
            ssl=SSLConfig.from_env(),
            run=RunConfig.from_env(),
            options=load_options_file(os.environ.get("CONDUCTOR_CONFIG_FILE")),
        )

    def lookup_option(self, opt: str, default: Any = _UNSET) -> OptionLookup:
        """
        Look up a plugin option.

        Args:
            opt: Option name such as "controller.host"
            default: Value to use when the option is not set

        Returns:
            OptionLookup describing whether the value was found, defaulted
            or is missing
        """
        if opt in self.options:
            return OptionLookup(opt, LookupStatus.FOUND, self.options[opt])
        if default is not _UNSET:
            return OptionLookup(opt, LookupStatus.DEFAULTED, default)
        return OptionLookup(opt, LookupStatus.MISSING)

    def get_option(self, opt: str, default: Any = _UNSET) -> Any:
        """
        Get a plugin option, failing when it is unset and has no default.

        Raises:
            UserError: When no default is given and the option is not found
        """
        return self.lookup_option(opt, default).unwrap()

    def validate(self, strict: bool = False) -> list:
        """
        Validate all configuration.

        Args:
            strict: If True, also require SSL identity settings.

        Returns:
            List of error messages.
        """
        errors = []
        errors.extend(self.controller.validate())
        errors.extend(self.run.validate())

        if strict:
            errors.extend(self.ssl.validate())

        return errors

    def validate_or_exit(self, strict: bool = False):
        """
        Validate configuration and exit if invalid.

        Args:
            strict: If True, also require SSL identity settings.
        """
        errors = self.validate(strict=strict)
        if errors:
            logger.critical("Configuration validation failed:")
            for error in errors:
                logger.critical(f"  - {error}")
            sys.exit(2)

    def log_config(self):
        """Log configuration (without sensitive values)."""
        logger.info("Configuration loaded:")
        logger.info(f"  Controller: {self.controller.scheme}://"
                    f"{self.get_option('controller.host', 'localhost')}:"
                    f"{self.get_option('controller.port', '8443')}")
        logger.info(f"  Identity: {self.ssl.identity}")
        logger.info(f"  Batch size: {self.run.batch_size}")
        logger.info(f"  Retries: {self.run.retry_count} "
                    f"(backoff {self.run.retry_backoff_seconds}s)")
        logger.info(f"  Options: {len(self.options)} set")


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the process configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config
