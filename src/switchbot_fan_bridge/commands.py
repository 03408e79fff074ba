"""Outbound command descriptors shared by the radio and cloud transports."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

TURN_ON = "turnOn"
TURN_OFF = "turnOff"
SET_WIND_SPEED = "setWindSpeed"
SET_OSCILLATION = "setOscillation"


@dataclass(frozen=True)
class CommandDescriptor:
    command: str
    parameter: str = "default"
    command_type: str = "command"

    def to_payload(self) -> Dict[str, str]:
        return {
            "commandType": self.command_type,
            "command": self.command,
            "parameter": self.parameter,
        }

    @classmethod
    def power(cls, active: bool) -> "CommandDescriptor":
        return cls(TURN_ON if active else TURN_OFF)

    @classmethod
    def wind_speed(cls, speed: int) -> "CommandDescriptor":
        # The cloud accepts 1..100; zero speed is sent as the slowest setting.
        return cls(SET_WIND_SPEED, str(max(1, min(100, int(speed)))))

    @classmethod
    def oscillation(cls, enabled: bool) -> "CommandDescriptor":
        return cls(SET_OSCILLATION, "on" if enabled else "off")
