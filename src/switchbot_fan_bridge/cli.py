"""Command-line client for interacting with the bridge HTTP API."""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, Iterable, MutableMapping, Optional

import httpx
import yaml

DEFAULT_SERVER_URL = "http://127.0.0.1:8000"
ENV_PREFIX = "SWITCHBOT_FAN_"


class CliError(Exception):
    """Raised when the CLI encounters an expected error condition."""


@dataclass(frozen=True)
class ClientConfig:
    """Configuration for the API client."""

    server_url: str
    api_key: Optional[str]
    output: str
    timeout: float = 10.0


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="switchbot-fan",
        description=(
            "CLI for the SwitchBot fan bridge API. Uses SWITCHBOT_FAN_* env vars "
            "for defaults and prints JSON (default) or YAML. Examples: "
            "`switchbot-fan devices list`, `switchbot-fan devices set <id> --on --speed 40`."
        ),
    )
    parser.add_argument(
        "--server-url",
        default=_env("SERVER_URL", DEFAULT_SERVER_URL),
        help=(
            f"Base URL for the bridge API (env: {ENV_PREFIX}SERVER_URL). "
            f"Defaults to {DEFAULT_SERVER_URL}."
        ),
    )
    parser.add_argument(
        "--api-key",
        default=_env("API_KEY"),
        help=(
            f"API key for authentication (env: {ENV_PREFIX}API_KEY). Sets both "
            "'X-API-Key' and 'Authorization: ApiKey <key>' headers when provided."
        ),
    )
    parser.add_argument(
        "--output",
        choices=["json", "yaml"],
        default=_env("OUTPUT", "json"),
        help=f"Output format for responses (env: {ENV_PREFIX}OUTPUT). Defaults to 'json'.",
    )

    subparsers = parser.add_subparsers(dest="command", required=False)
    _add_status_commands(subparsers)
    _add_device_commands(subparsers)
    return parser


def _add_status_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    health = subparsers.add_parser(
        "health",
        help="Check API health (GET /health returns {'status': 'ok'} when healthy)",
    )
    health.set_defaults(func=_cmd_health)

    status = subparsers.add_parser(
        "status",
        help="Show bridge status (GET /status with subsystem health and webhook registration)",
    )
    status.set_defaults(func=_cmd_status)


def _add_device_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    devices = subparsers.add_parser(
        "devices",
        help="Fan commands (list/get/set/refresh)",
        description=(
            "Inspect and control configured fans. Device responses include the canonical "
            "state, pending fields not yet acknowledged, and error markers."
        ),
    )
    device_sub = devices.add_subparsers(dest="device_command", required=True)

    list_cmd = device_sub.add_parser("list", help="List fans (GET /devices)")
    list_cmd.set_defaults(func=_cmd_devices_list)

    get = device_sub.add_parser("get", help="Show one fan (GET /devices/{id})")
    get.add_argument("device_id", help="Device identifier")
    get.set_defaults(func=_cmd_devices_get)

    set_cmd = device_sub.add_parser(
        "set",
        help="Queue changes for a fan (PATCH /devices/{id})",
        description=(
            "Queues local intent. Changes made within the push window are sent together; "
            "speed and oscillation are only pushed while the fan is on."
        ),
    )
    set_cmd.add_argument("device_id", help="Device identifier")
    set_cmd.add_argument("--on", action="store_true", help="Turn the fan on")
    set_cmd.add_argument("--off", action="store_true", help="Turn the fan off")
    set_cmd.add_argument("--speed", type=int, help="Rotation speed (0-100)")
    set_cmd.add_argument("--swing", action="store_true", default=None, help="Enable oscillation")
    set_cmd.add_argument("--no-swing", dest="swing", action="store_false", help="Disable oscillation")
    set_cmd.add_argument("--light-on", dest="light", action="store_true", default=None, help="Turn the light on")
    set_cmd.add_argument("--light-off", dest="light", action="store_false", help="Turn the light off")
    set_cmd.add_argument("--brightness", type=int, help="Light brightness (0-100)")
    set_cmd.set_defaults(func=_cmd_devices_set)

    refresh = device_sub.add_parser("refresh", help="Pull fresh status now (POST /devices/{id}/refresh)")
    refresh.add_argument("device_id", help="Device identifier")
    refresh.set_defaults(func=_cmd_devices_refresh)


def _load_config(args: argparse.Namespace) -> ClientConfig:
    output = args.output or "json"
    if output not in {"json", "yaml"}:
        raise CliError("Output format must be 'json' or 'yaml'")
    return ClientConfig(server_url=args.server_url, api_key=args.api_key, output=output)


def _build_client(config: ClientConfig) -> httpx.Client:
    headers: MutableMapping[str, str] = {}
    if config.api_key:
        headers["X-API-Key"] = config.api_key
        headers["Authorization"] = f"ApiKey {config.api_key}"
    return httpx.Client(base_url=config.server_url, headers=headers, timeout=config.timeout)


def _print_output(data: Any, output: str) -> None:
    if output == "yaml":
        yaml.safe_dump(data, sys.stdout, sort_keys=False)
    else:
        json.dump(data, sys.stdout, indent=2)
        sys.stdout.write("\n")


def _handle_response(response: httpx.Response) -> Any:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:  # pragma: no cover - CLI feedback path
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = response.text
        raise CliError(f"Request failed ({response.status_code}): {detail}") from exc
    if response.content:
        return response.json()
    return None


def _cmd_health(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/health")), config.output)


def _cmd_status(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/status")), config.output)


def _cmd_devices_list(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/devices")), config.output)


def _cmd_devices_get(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get(f"/devices/{args.device_id}")), config.output)


def _validate_percent(name: str, value: int) -> None:
    if value < 0 or value > 100:
        raise CliError(f"{name.capitalize()} must be between 0 and 100.")


def _cmd_devices_set(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    if args.on and args.off:
        raise CliError("Choose either --on or --off, not both.")
    payload: MutableMapping[str, Any] = {}
    if args.on:
        payload["active"] = True
    if args.off:
        payload["active"] = False
    if args.speed is not None:
        _validate_percent("speed", args.speed)
        payload["rotation_speed"] = args.speed
    if args.swing is not None:
        payload["swing_enabled"] = args.swing
    if args.light is not None:
        payload["light_on"] = args.light
    if args.brightness is not None:
        _validate_percent("brightness", args.brightness)
        payload["brightness"] = args.brightness
    if not payload:
        raise CliError("At least one change is required (on, off, speed, swing, light, brightness).")
    data = _handle_response(client.patch(f"/devices/{args.device_id}", json=payload))
    _print_output(data, config.output)


def _cmd_devices_refresh(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.post(f"/devices/{args.device_id}/refresh"))
    _print_output(data, config.output)


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=argv)

    try:
        config = _load_config(args)
        if not args.command:
            parser.print_help()
            sys.exit(1)

        with _build_client(config) as client:
            func: Callable[[ClientConfig, httpx.Client, argparse.Namespace], None] = args.func
            func(config, client, args)
    except CliError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)
    except httpx.RequestError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"HTTP request failed: {exc}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
