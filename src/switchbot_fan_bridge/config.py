"""Configuration loading for the SwitchBot fan bridge."""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from .state import BOOL_FIELDS, FIELD_NAMES, PERCENT_FIELDS, coerce_bool

CONFIG_ENV_PREFIX = "SWITCHBOT_FAN_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

DEFAULT_DEVICE_TYPE = "Battery Circulator Fan"
CONNECTION_TYPES = {"": "", "ble": "BLE", "openapi": "OpenAPI", "ble/openapi": "BLE/OpenAPI"}
MIN_REFRESH_RATE = 5.0
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

_DEVICE_OVERRIDES = ("refresh_rate", "push_rate", "max_retries", "delay_between_retries", "scan_duration")


def _mac_from_device_id(device_id: str) -> Optional[str]:
    compact = re.sub(r"[^0-9A-Fa-f]", "", device_id)
    if len(compact) != 12:
        return None
    compact = compact.upper()
    return ":".join(compact[index : index + 2] for index in range(0, 12, 2))


@dataclass(frozen=True)
class FanDeviceConfig:
    """One configured fan and how the bridge may reach it."""

    device_id: str
    name: Optional[str] = None
    device_type: str = DEFAULT_DEVICE_TYPE
    connection_type: str = "OpenAPI"
    ble_mac: Optional[str] = None
    enable_cloud_service: bool = True
    webhook: bool = False
    offline: bool = False
    refresh_rate: Optional[float] = None
    push_rate: Optional[float] = None
    max_retries: Optional[int] = None
    delay_between_retries: Optional[float] = None
    scan_duration: Optional[float] = None
    initial_state: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.device_id:
            raise ValueError("device_id is required for every device")
        key = str(self.connection_type or "").strip().lower()
        if key not in CONNECTION_TYPES:
            raise ValueError(
                f"connection_type must be one of {sorted(v for v in CONNECTION_TYPES.values() if v)} "
                f"or empty; got {self.connection_type!r}."
            )
        object.__setattr__(self, "connection_type", CONNECTION_TYPES[key])
        if not self.ble_mac:
            object.__setattr__(self, "ble_mac", _mac_from_device_id(self.device_id))
        if self.refresh_rate is not None:
            _validate_range("refresh_rate", self.refresh_rate, MIN_REFRESH_RATE, 86400.0)
        if self.push_rate is not None:
            _validate_range("push_rate", self.push_rate, 0.0, 60.0)
        if self.max_retries is not None:
            _validate_range("max_retries", self.max_retries, 0, 50)
        if self.delay_between_retries is not None:
            _validate_range("delay_between_retries", self.delay_between_retries, 0.0, 300.0)
        if self.scan_duration is not None:
            _validate_range("scan_duration", self.scan_duration, 0.1, 60.0)

    @property
    def display_name(self) -> str:
        return self.name or self.device_id

    @property
    def uses_radio(self) -> bool:
        return self.connection_type in {"BLE", "BLE/OpenAPI"}

    @property
    def uses_cloud(self) -> bool:
        return self.connection_type in {"OpenAPI", "BLE/OpenAPI"}

    def setting(self, name: str, config: "Config") -> Any:
        """Return the per-device override for ``name`` or the global value."""

        value = getattr(self, name)
        return getattr(config, name) if value is None else value

    def as_dict(self) -> Dict[str, Any]:
        data = {item.name: getattr(self, item.name) for item in fields(self)}
        data["initial_state"] = dict(self.initial_state)
        return data


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    token: Optional[str] = None
    secret: Optional[str] = None
    cloud_base_url: str = "https://api.switch-bot.com/v1.1"
    cloud_timeout: float = 10.0
    refresh_rate: float = 120.0
    push_rate: float = 0.1
    post_push_refresh_delay: float = 15.0
    max_retries: int = 5
    delay_between_retries: float = 3.0
    radio_retry_delay: float = 1.0
    radio_backoff_factor: float = 1.0
    radio_backoff_max: float = 10.0
    radio_timeout: float = 10.0
    scan_duration: float = 1.0
    radio_scan_enabled: bool = True
    webhook_url: Optional[str] = None
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_key: Optional[str] = None
    api_docs: bool = True
    subsystem_failure_threshold: int = 5
    subsystem_failure_cooldown: float = 15.0
    log_format: str = "plain"
    log_level: str = "INFO"
    dispatch_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    radio_log_level: Optional[str] = None
    dry_run: bool = False
    config_version: int = CONFIG_VERSION
    devices: Sequence[FanDeviceConfig] = ()

    def __post_init__(self) -> None:
        _validate_config(self)

    @property
    def cloud_configured(self) -> bool:
        return bool(self.token)

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        base: Dict[str, Any] = {
            item.name: getattr(self, item.name) for item in fields(self) if item.name != "devices"
        }
        for key in ("token", "secret", "api_key"):
            base[key] = "***REDACTED***" if base[key] else None
        base["devices"] = [device.as_dict() for device in self.devices]
        return base

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        file_config = _load_file_config(
            args.config
            or _coerce_path(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
            or None
        )
        env_config = _load_env_config(CONFIG_ENV_PREFIX)
        cli_config = _cli_overrides(args)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, cli_config)
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_range("cloud_timeout", config.cloud_timeout, 0.1, 120.0)
    _validate_range("refresh_rate", config.refresh_rate, MIN_REFRESH_RATE, 86400.0)
    _validate_range("push_rate", config.push_rate, 0.0, 60.0)
    _validate_range("post_push_refresh_delay", config.post_push_refresh_delay, 0.0, 3600.0)
    _validate_range("max_retries", config.max_retries, 0, 50)
    _validate_range("delay_between_retries", config.delay_between_retries, 0.0, 300.0)
    _validate_range("radio_retry_delay", config.radio_retry_delay, 0.0, 60.0)
    _validate_range("radio_backoff_factor", config.radio_backoff_factor, 1.0, 10.0)
    _validate_range("radio_backoff_max", config.radio_backoff_max, 0.0, 300.0)
    _validate_range("radio_timeout", config.radio_timeout, 0.1, 120.0)
    _validate_range("scan_duration", config.scan_duration, 0.1, 60.0)
    _validate_range("api_port", config.api_port, 1, 65535)
    _validate_range("subsystem_failure_threshold", config.subsystem_failure_threshold, 1, 1000)
    _validate_range("subsystem_failure_cooldown", config.subsystem_failure_cooldown, 0.0, 3600.0)
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    for field_name, value in (
        ("log_level", config.log_level),
        ("dispatch_log_level", config.dispatch_log_level),
        ("api_log_level", config.api_log_level),
        ("radio_log_level", config.radio_log_level),
    ):
        _validate_log_level_value(value, field_name)
    seen = set()
    for device in config.devices:
        if device.device_id in seen:
            raise ValueError(f"Duplicate device_id in devices: {device.device_id}")
        seen.add(device.device_id)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the bridge."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    if value.upper() not in LOG_LEVELS:
        raise ValueError(f"{name} must be one of {sorted(LOG_LEVELS)}; got {value}.")


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="switchbot-fan-bridge",
        description="Run the SwitchBot circulator fan bridge.",
    )
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument("--token", type=str, help="SwitchBot OpenAPI token.")
    parser.add_argument("--secret", type=str, help="SwitchBot OpenAPI secret used to sign requests.")
    parser.add_argument("--cloud-base-url", type=str, help="Base URL of the SwitchBot OpenAPI.")
    parser.add_argument("--cloud-timeout", type=float, help="Seconds to wait for cloud requests.")
    parser.add_argument(
        "--refresh-rate",
        type=float,
        help=f"Seconds between status refreshes (minimum {MIN_REFRESH_RATE:g}).",
    )
    parser.add_argument(
        "--push-rate",
        type=float,
        help="Debounce window in seconds before queued changes are pushed.",
    )
    parser.add_argument(
        "--post-push-refresh-delay",
        type=float,
        help="Seconds after a push before the follow-up status refresh.",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        help="Extra attempts for radio commands and cloud status pulls.",
    )
    parser.add_argument(
        "--delay-between-retries",
        type=float,
        help="Seconds between cloud status pull attempts.",
    )
    parser.add_argument("--radio-retry-delay", type=float, help="Initial delay between radio retries.")
    parser.add_argument(
        "--radio-backoff-factor",
        type=float,
        help="Multiplier applied to the radio retry delay between attempts.",
    )
    parser.add_argument("--radio-backoff-max", type=float, help="Maximum delay between radio retries.")
    parser.add_argument("--radio-timeout", type=float, help="Seconds to wait for a radio connection.")
    parser.add_argument(
        "--scan-duration",
        type=float,
        help="Seconds to scan for a device advertisement during a radio refresh.",
    )
    parser.add_argument(
        "--no-radio-scan",
        action="store_true",
        help="Disable the background advertisement listener.",
    )
    parser.add_argument(
        "--webhook-url",
        type=str,
        help="Public URL of POST /webhook to register with the SwitchBot cloud.",
    )
    parser.add_argument("--api-host", type=str, help="Bind address for the HTTP/API server.")
    parser.add_argument("--api-port", type=int, help="TCP port for the HTTP/API server.")
    parser.add_argument(
        "--api-key",
        type=str,
        help="API key required via X-API-Key or Authorization: ApiKey <key>.",
    )
    parser.add_argument(
        "--api-docs",
        action="store_true",
        help="Enable interactive API docs (enabled by default).",
    )
    parser.add_argument("--no-api-docs", action="store_true", help="Disable interactive API docs.")
    parser.add_argument(
        "--subsystem-failure-threshold",
        type=int,
        help="Consecutive failures before subsystem attempts are temporarily suppressed.",
    )
    parser.add_argument(
        "--subsystem-failure-cooldown",
        type=float,
        help="Seconds to pause a subsystem after repeated failures.",
    )
    parser.add_argument("--log-format", choices=["plain", "json"], help="Structured logging format.")
    parser.add_argument("--log-level", choices=sorted(LOG_LEVELS), help="Log verbosity level.")
    parser.add_argument(
        "--dispatch-log-level",
        choices=sorted(LOG_LEVELS),
        help="Log verbosity for the dispatch and refresh pipeline.",
    )
    parser.add_argument("--api-log-level", choices=sorted(LOG_LEVELS), help="Log verbosity for API server.")
    parser.add_argument("--radio-log-level", choices=sorted(LOG_LEVELS), help="Log verbosity for BLE handling.")
    parser.add_argument(
        "--device",
        action="append",
        dest="devices",
        help=(
            "Configure a fan as device_id=<id>,connection_type=<BLE|OpenAPI|BLE/OpenAPI>,"
            "name=<name>,ble_mac=<mac>,webhook=<bool>,initial_state=<json>"
        ),
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log outbound commands without sending them.",
    )
    parser.add_argument(
        "--config-version",
        type=int,
        help="Version of the configuration schema being supplied.",
    )
    return parser.parse_args(args=cli_args)


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for name in Config.__dataclass_fields__:
        env_key = f"{prefix}{name}".upper()
        if env_key in os.environ:
            mapping[name] = os.environ[env_key]
    return mapping


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    skipped = ("config", "no_api_docs", "no_radio_scan", "api_docs", "dry_run")
    mapping = {k: v for k, v in vars(args).items() if k not in skipped and v is not None}
    if args.api_docs:
        mapping["api_docs"] = True
    if args.no_api_docs:
        mapping["api_docs"] = False
    if args.no_radio_scan:
        mapping["radio_scan_enabled"] = False
    if args.dry_run:
        mapping["dry_run"] = True
    return mapping


_INT_FIELDS = {"api_port", "max_retries", "subsystem_failure_threshold", "config_version"}
_FLOAT_FIELDS = {
    "cloud_timeout",
    "refresh_rate",
    "push_rate",
    "post_push_refresh_delay",
    "delay_between_retries",
    "radio_retry_delay",
    "radio_backoff_factor",
    "radio_backoff_max",
    "radio_timeout",
    "scan_duration",
    "subsystem_failure_cooldown",
}
_BOOL_FIELDS = {"radio_scan_enabled", "api_docs", "dry_run"}
_LEVEL_FIELDS = {"log_level", "dispatch_log_level", "api_log_level", "radio_log_level"}


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in Config.__dataclass_fields__:
            raise ValueError(f"Unknown configuration key: {key}")
        if key in _INT_FIELDS:
            data[key] = int(value)
        elif key in _FLOAT_FIELDS:
            data[key] = float(value)
        elif key in _BOOL_FIELDS:
            data[key] = coerce_bool(value)
        elif key in _LEVEL_FIELDS:
            data[key] = str(value).upper()
        elif key == "log_format":
            data[key] = str(value).lower()
        elif key == "devices":
            data[key] = _coerce_devices(value)
        else:
            data[key] = str(value)
    return replace(config, **data)


def _coerce_path(value: Any) -> Optional[Path]:
    if value is None:
        return None
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_devices(value: Any) -> Sequence[FanDeviceConfig]:
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return (_device_from_str(value),)
        return _coerce_devices(parsed)

    if isinstance(value, FanDeviceConfig):
        return (value,)
    if isinstance(value, Mapping):
        return (_device_from_mapping(value),)

    if isinstance(value, Iterable):
        devices: List[FanDeviceConfig] = []
        for item in value:
            if isinstance(item, FanDeviceConfig):
                devices.append(item)
            elif isinstance(item, Mapping):
                devices.append(_device_from_mapping(item))
            elif isinstance(item, str):
                devices.extend(_coerce_devices(item))
            else:
                raise ValueError("Unsupported device entry")
        return tuple(devices)

    raise ValueError("Unsupported devices configuration")


def _optional(value: Any, cast: Any) -> Any:
    return None if value is None else cast(value)


def _coerce_initial_state(value: Mapping[str, Any]) -> Dict[str, Any]:
    state: Dict[str, Any] = {}
    for key, raw in value.items():
        if key not in FIELD_NAMES:
            raise ValueError(f"initial_state has unknown field '{key}'")
        if key in BOOL_FIELDS:
            state[key] = coerce_bool(raw)
        elif key in PERCENT_FIELDS:
            try:
                state[key] = int(raw)
            except (TypeError, ValueError):
                raise ValueError(f"initial_state.{key} must be an integer") from None
        else:
            state[key] = None if raw is None else str(raw)
    return state


def _device_from_mapping(value: Mapping[str, Any]) -> FanDeviceConfig:
    data = {k.replace("-", "_"): v for k, v in value.items()}
    device_id = data.get("device_id") or data.get("id")
    if not device_id:
        raise ValueError("Devices require a 'device_id' field")
    initial_state = data.get("initial_state") or {}
    if isinstance(initial_state, str):
        initial_state = json.loads(initial_state)
    if not isinstance(initial_state, Mapping):
        raise ValueError("initial_state must be a table of state values")
    return FanDeviceConfig(
        device_id=str(device_id),
        name=_optional(data.get("name"), str),
        device_type=str(data.get("device_type") or DEFAULT_DEVICE_TYPE),
        connection_type=str(data.get("connection_type", "OpenAPI") or ""),
        ble_mac=_optional(data.get("ble_mac"), str),
        enable_cloud_service=coerce_bool(data.get("enable_cloud_service", True)),
        webhook=coerce_bool(data.get("webhook", False)),
        offline=coerce_bool(data.get("offline", False)),
        refresh_rate=_optional(data.get("refresh_rate"), float),
        push_rate=_optional(data.get("push_rate"), float),
        max_retries=_optional(data.get("max_retries"), int),
        delay_between_retries=_optional(data.get("delay_between_retries"), float),
        scan_duration=_optional(data.get("scan_duration"), float),
        initial_state=_coerce_initial_state(initial_state),
    )


_PAIR = re.compile(r"(?P<key>[^=]+)=(?P<value>.*)")


def _device_from_str(value: str) -> FanDeviceConfig:
    state_value: Optional[str] = None
    if "initial_state=" in value:
        prefix, state_raw = value.split("initial_state=", 1)
        value = prefix.rstrip(",")
        state_value = state_raw.strip()

    mapping: Dict[str, Any] = {}
    for part in (part.strip() for part in value.split(",")):
        if not part:
            continue
        match = _PAIR.match(part)
        if not match:
            raise ValueError("Device arguments must be key=value pairs separated by commas")
        mapping[match.group("key").strip()] = match.group("value").strip()
    if state_value is not None:
        mapping["initial_state"] = json.loads(state_value)
    return _device_from_mapping(mapping)


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover - defensive logging path
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
