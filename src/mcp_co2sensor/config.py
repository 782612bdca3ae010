"""
Configuration management for the CO2 Sensor MCP Server.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/mcp-co2sensor/config.yml or --config path)
3. Environment variables (MCP_CO2_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = Path("/etc/mcp-co2sensor/config.yml")
DEFAULT_ENV_PREFIX = "MCP_CO2_"

_VALID_LOG_LEVELS = {"debug", "info", "warn", "warning", "error", "critical"}


def _normalize_log_level(v: str) -> str:
    v_lower = v.lower()
    if v_lower not in _VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log level: {v}. Must be one of: {', '.join(sorted(_VALID_LOG_LEVELS))}"
        )
    # Normalize 'warn' to 'warning'
    if v_lower == "warn":
        return "warning"
    return v_lower


# =============================================================================
# Server Configuration
# =============================================================================


class ServerConfig(BaseModel):
    """Protocol-level server settings.

    Attributes:
        name: Server name reported in the initialize result.
        info_name: Server name reported in the startup server/info notification.
        version: Server version string.
        default_protocol_version: Protocol version used when the peer sends none.
        shutdown_grace_ms: Delay between the shutdown response and exit.
    """

    name: str = Field(default="co2-sensor", description="Name in initialize result")
    info_name: str = Field(
        default="device-sensor",
        description="Name in the server/info notification sent at startup",
    )
    version: str = Field(default="1.0.0", description="Server version")
    default_protocol_version: str = Field(
        default="2024-11-05",
        description="Protocol version echoed when initialize carries none",
    )
    shutdown_grace_ms: int = Field(
        default=100,
        ge=0,
        le=10_000,
        description="Grace delay after the shutdown response before exiting",
    )


# =============================================================================
# Sensor Configuration
# =============================================================================


class SensorConfig(BaseModel):
    """Sensor acquisition and simulation settings.

    Attributes:
        timeout_ms: How long an acquisition waits for hardware data.
        tick_interval_seconds: Period of the background battery/simulation tick.
        simulated_min: Lower bound (inclusive) of simulated readings.
        simulated_max: Upper bound (exclusive) of simulated readings.
        request_command: Bytes written to the hardware to request a reading.
        battery_start: Initial battery percentage.
        battery_drain: Battery percentage lost per tick.
    """

    timeout_ms: int = Field(
        default=5000,
        gt=0,
        le=600_000,
        description="Maximum wait for a hardware reading, in milliseconds",
    )
    tick_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Background tick period in seconds",
    )
    simulated_min: int = Field(default=400, ge=0, description="Simulated CO2 minimum")
    simulated_max: int = Field(default=1000, gt=0, description="Simulated CO2 maximum")
    request_command: str = Field(
        default="getdata\r\n",
        description="Command written to the sensor to request a reading",
    )
    battery_start: float = Field(default=85.0, ge=0, le=100)
    battery_drain: float = Field(default=0.1, ge=0)

    @model_validator(mode="after")
    def validate_simulated_range(self) -> SensorConfig:
        """Ensure the simulated range is not empty."""
        if self.simulated_max <= self.simulated_min:
            raise ValueError(
                f"simulated_max ({self.simulated_max}) must be greater than "
                f"simulated_min ({self.simulated_min})"
            )
        return self


class SerialConfig(BaseModel):
    """Serial hardware transport settings.

    Attributes:
        enabled: Whether to look for a serial sensor at all.
        port: Explicit port path; skips USB discovery when set.
        vendor_id: USB vendor id to match during discovery (hex string).
        product_id: USB product id to match during discovery (hex string).
        baud_rate: Serial baud rate.
        read_timeout_seconds: Blocking read timeout of the reader thread.
    """

    enabled: bool = Field(default=True, description="Enable serial discovery")
    port: str | None = Field(default=None, description="Explicit serial port path")
    vendor_id: str = Field(default="2E8A", description="USB vendor id (Raspberry Pi)")
    product_id: str = Field(default="0005", description="USB product id (Pico)")
    baud_rate: int = Field(default=115200, gt=0)
    read_timeout_seconds: float = Field(default=0.5, gt=0, le=10)

    @field_validator("vendor_id", "product_id")
    @classmethod
    def validate_usb_id(cls, v: str) -> str:
        """Validate and normalize a USB id to upper-case hex."""
        try:
            int(v, 16)
        except ValueError as e:
            raise ValueError(f"Invalid USB id: {v!r}") from e
        return v.upper()


class NetworkConfig(BaseModel):
    """Values reported by the network status and MQTT stubs."""

    wifi_ssid: str = Field(default="SimulatedWiFi")
    mqtt_broker: str = Field(default="192.168.1.100")
    mqtt_port: int = Field(default=1883, gt=0, le=65535)
    mqtt_topic: str = Field(default="sensor/1")


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Application log level.
        json_format: Whether stderr logs are JSON objects.
        sensor_log_path: Append-only sensor log file ("" disables it).
        debug_mode: Enable extra diagnostic logging.
    """

    level: str = Field(default="info", description="Log level")
    json_format: bool = Field(default=True, description="JSON log records on stderr")
    sensor_log_path: str = Field(
        default="~/co2_level.log",
        description="Append-only sensor log file path",
    )
    debug_mode: bool = Field(default=False, description="Enable extra diagnostics")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        return _normalize_log_level(v)


# =============================================================================
# Root Configuration
# =============================================================================


class AppConfig(BaseModel):
    """Root configuration for the CO2 Sensor MCP Server."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    sensor: SensorConfig = Field(default_factory=SensorConfig)
    serial: SerialConfig = Field(default_factory=SerialConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore, e.g. MCP_CO2_SENSOR__TIMEOUT_MS=2000.
    Values stay strings; pydantic coerces them to each field's type, so a
    digits-only value for a string field (MCP_CO2_SERIAL__PRODUCT_ID=0005)
    is kept as written.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = value

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments in config layout.
    """
    parser = argparse.ArgumentParser(
        prog="mcp-co2sensor",
        description="CO2 Sensor MCP Server (JSON-RPC over stdio)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Never attach serial hardware; always simulate readings",
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        help="Hardware acquisition timeout in milliseconds",
    )

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result.setdefault("logging", {})
        result["logging"]["debug_mode"] = True
        result["logging"]["level"] = "debug"

    if parsed.simulate:
        result["serial"] = {"enabled": False}

    if parsed.timeout_ms is not None:
        result["sensor"] = {"timeout_ms": parsed.timeout_ms}

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path if it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If a specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=["--simulate"])
        >>> config.serial.enabled
        False
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
