"""Per-channel payload normalizers.

Each normalizer maps one raw channel payload into a canonical state
mutation (a mapping of ``FanState`` field names to values). They are pure:
the caller applies the mutation to the state store.
"""

from __future__ import annotations

import enum
import re
from typing import Any, Dict, Mapping, Optional

from .errors import MalformedPayloadError
from .state import FanState, clamp_percent

StateMutation = Dict[str, Any]

_VERSION_STRIP = re.compile(r"^V|-.*$")


class Channel(str, enum.Enum):
    RADIO = "radio"
    CLOUD = "cloud"
    WEBHOOK = "webhook"


def normalize_version(raw: Any) -> Optional[str]:
    """Strip the leading ``V`` marker and any build suffix.

    ``"V1.2-build3"`` becomes ``"1.2"``. Returns ``None`` when nothing
    usable remains so the caller keeps the cached version.
    """

    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    version = _VERSION_STRIP.sub("", text)
    return version or None


def _coerce_speed(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return clamp_percent(value)
    except (TypeError, ValueError):
        return None


def _coerce_battery(value: Any) -> int:
    # Unreadable battery readings are reported as full.
    if value is None or isinstance(value, bool):
        return 100
    try:
        return clamp_percent(float(value))
    except (TypeError, ValueError, OverflowError):
        return 100


def _require_mapping(raw: Any, channel: Channel) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise MalformedPayloadError(f"{channel.value} payload must be an object, got {type(raw).__name__}")
    return raw


def normalize_radio(raw: Any, previous: Optional[FanState] = None) -> StateMutation:
    payload = _require_mapping(raw, Channel.RADIO)
    if "state" not in payload:
        raise MalformedPayloadError("radio payload is missing 'state'")
    mutation: StateMutation = {"active": payload["state"] == "on"}
    speed = _coerce_speed(payload.get("fanSpeed"))
    if speed is not None:
        mutation["rotation_speed"] = speed
    return mutation


def _normalize_status_body(
    payload: Mapping[str, Any], active: bool, previous: Optional[FanState]
) -> StateMutation:
    mutation: StateMutation = {
        "active": active,
        "swing_enabled": payload.get("oscillation") == "on",
        "battery_level": _coerce_battery(payload.get("battery")),
        "charging": payload.get("chargingStatus") == "charging",
    }
    speed = _coerce_speed(payload.get("fanSpeed"))
    if speed is not None:
        mutation["rotation_speed"] = speed
    version = normalize_version(payload.get("version"))
    if version is not None:
        mutation["firmware_version"] = version
    elif previous is not None and previous.firmware_version is not None:
        mutation["firmware_version"] = previous.firmware_version
    return mutation


def normalize_cloud(raw: Any, previous: Optional[FanState] = None) -> StateMutation:
    payload = _require_mapping(raw, Channel.CLOUD)
    if "power" not in payload:
        raise MalformedPayloadError("cloud status is missing 'power'")
    return _normalize_status_body(payload, payload["power"] == "on", previous)


def normalize_webhook(raw: Any, previous: Optional[FanState] = None) -> StateMutation:
    payload = _require_mapping(raw, Channel.WEBHOOK)
    if "powerState" not in payload:
        raise MalformedPayloadError("webhook context is missing 'powerState'")
    # The webhook reports "ON" in upper case and the comparison is exact.
    return _normalize_status_body(payload, payload["powerState"] == "ON", previous)


_NORMALIZERS = {
    Channel.RADIO: normalize_radio,
    Channel.CLOUD: normalize_cloud,
    Channel.WEBHOOK: normalize_webhook,
}


def normalize(raw: Any, channel: Channel, previous: Optional[FanState] = None) -> StateMutation:
    """Dispatch to the normalizer for ``channel``."""

    return _NORMALIZERS[Channel(channel)](raw, previous)
