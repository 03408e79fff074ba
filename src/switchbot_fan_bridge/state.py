"""Canonical fan state, cached baseline, and the projection commit step."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, List, Mapping, Optional

LOW_BATTERY_THRESHOLD = 10

PERCENT_FIELDS = frozenset({"rotation_speed", "brightness", "battery_level"})
BOOL_FIELDS = frozenset({"active", "swing_enabled", "light_on", "charging"})
MUTABLE_FIELDS = ("active", "rotation_speed", "swing_enabled", "light_on", "brightness")

# Applied when no transport can reach the device.
FORCED_OFF: Mapping[str, Any] = {
    "active": False,
    "rotation_speed": 0,
    "swing_enabled": False,
    "light_on": False,
    "brightness": 0,
}


def clamp_percent(value: Any) -> int:
    """Coerce to an int in [0, 100]."""

    return max(0, min(100, int(value)))


def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass(frozen=True)
class FanState:
    """Single source of truth for one circulator fan."""

    active: bool = False
    rotation_speed: int = 0
    swing_enabled: bool = False
    light_on: bool = False
    brightness: int = 0
    battery_level: int = 100
    charging: bool = False
    firmware_version: Optional[str] = None

    def __post_init__(self) -> None:
        for name in PERCENT_FIELDS:
            object.__setattr__(self, name, clamp_percent(getattr(self, name)))
        for name in BOOL_FIELDS:
            object.__setattr__(self, name, coerce_bool(getattr(self, name)))

    @property
    def low_battery(self) -> bool:
        return self.battery_level < LOW_BATTERY_THRESHOLD

    def with_changes(self, changes: Mapping[str, Any]) -> "FanState":
        unknown = set(changes) - FIELD_NAMES
        if unknown:
            raise KeyError(f"Unknown state fields: {sorted(unknown)}")
        return replace(self, **dict(changes))

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["low_battery"] = self.low_battery
        return data

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "FanState":
        if not values:
            return cls()
        return cls(**{key: value for key, value in values.items() if key in FIELD_NAMES})


FIELD_NAMES = frozenset(field.name for field in fields(FanState))


def diff(current: FanState, baseline: FanState) -> Dict[str, Any]:
    """Return the fields whose current value differs from the baseline."""

    return {
        name: getattr(current, name)
        for name in sorted(FIELD_NAMES)
        if getattr(current, name) != getattr(baseline, name)
    }


class StateStore:
    """Live canonical state plus the last-committed baseline used for diffing."""

    def __init__(self, initial: Optional[FanState] = None) -> None:
        seed = initial or FanState()
        self._current = seed
        self._baseline = seed
        self._generation = 0

    @property
    def current(self) -> FanState:
        return self._current

    @property
    def baseline(self) -> FanState:
        return self._baseline

    @property
    def generation(self) -> int:
        """Bumped by every local intent, acknowledgement and forced-off.

        A status pull started under an older generation is stale.
        """

        return self._generation

    def apply_local(self, name: str, value: Any) -> FanState:
        """Record a local intent; the baseline is untouched until acknowledged."""

        if name not in MUTABLE_FIELDS:
            raise KeyError(f"{name} is not a writable field")
        self._current = self._current.with_changes({name: value})
        self._generation += 1
        return self._current

    def apply_inbound(self, mutation: Mapping[str, Any]) -> FanState:
        """Apply a normalized channel mutation to both the state and the baseline."""

        if not mutation:
            return self._current
        self._current = self._current.with_changes(mutation)
        self._baseline = self._baseline.with_changes(mutation)
        return self._current

    def acknowledge(self, sent: Mapping[str, Any]) -> None:
        """Move the baseline to the values the device acknowledged."""

        if sent:
            self._baseline = self._baseline.with_changes(sent)
            self._generation += 1

    def force_off(self) -> FanState:
        self._current = self._current.with_changes(FORCED_OFF)
        self._baseline = self._baseline.with_changes(FORCED_OFF)
        self._generation += 1
        return self._current

    def pending(self) -> Dict[str, Any]:
        return diff(self._current, self._baseline)


@dataclass(frozen=True)
class ProjectionEvent:
    """One host-facing characteristic value."""

    service: str
    characteristic: str
    value: Any


_PROJECTION_LAYOUT = (
    ("fan", "active"),
    ("fan", "rotation_speed"),
    ("fan", "swing_enabled"),
    ("light", "light_on"),
    ("light", "brightness"),
    ("battery", "battery_level"),
    ("battery", "low_battery"),
    ("battery", "charging"),
)


def commit(state: FanState) -> List[ProjectionEvent]:
    """Project a canonical state into host characteristic events.

    Pure: the projection layer decides what to do with the events. The
    firmware revision is only emitted once a version is known.
    """

    events = [
        ProjectionEvent(service, name, getattr(state, name)) for service, name in _PROJECTION_LAYOUT
    ]
    if state.firmware_version:
        events.append(ProjectionEvent("info", "firmware_version", state.firmware_version))
    return events
