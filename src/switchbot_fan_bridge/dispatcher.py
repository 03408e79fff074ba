"""Outbound dispatch: transport selection, diffing, retries, and fallback."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from .cloud import SwitchBotCloudClient
from .commands import CommandDescriptor
from .config import FanDeviceConfig
from .errors import ConfigurationError, TransportError
from .health import BackoffPolicy
from .logging import get_logger
from .metrics import record_cloud_fallback, record_dispatch, record_radio_retry
from .radio import RadioTransport
from .state import MUTABLE_FIELDS, FanState, diff

AcknowledgeCallback = Callable[[Mapping[str, Any]], None]


class TransportChoice(str, enum.Enum):
    RADIO = "radio"
    CLOUD = "cloud"
    OFFLINE = "offline"


def cloud_usable(device: FanDeviceConfig, cloud: Optional[SwitchBotCloudClient]) -> bool:
    return (
        device.uses_cloud
        and device.enable_cloud_service
        and cloud is not None
        and cloud.configured
    )


def select_transport(
    device: FanDeviceConfig,
    radio: Optional[RadioTransport],
    cloud: Optional[SwitchBotCloudClient],
) -> TransportChoice:
    """Pick the transport for one dispatch or refresh.

    Raises :class:`ConfigurationError` when the connection type needs the
    cloud but the cloud service is disabled for the device. The ``offline``
    flag never overrides a reachable transport.
    """

    if device.uses_cloud and not device.enable_cloud_service:
        raise ConfigurationError(
            f"{device.display_name} uses {device.connection_type} but enable_cloud_service is false"
        )
    if device.uses_radio and radio is not None and radio.available:
        return TransportChoice.RADIO
    if cloud_usable(device, cloud):
        return TransportChoice.CLOUD
    return TransportChoice.OFFLINE


@dataclass(frozen=True)
class CommandGroup:
    name: str
    descriptor: CommandDescriptor
    fields: Mapping[str, Any]


def plan_groups(current: FanState, baseline: FanState) -> List[CommandGroup]:
    """Command groups for the fields that differ, in power, speed, swing order.

    Speed and swing are only pushed while the fan is intended to be on.
    """

    pending = {name: value for name, value in diff(current, baseline).items() if name in MUTABLE_FIELDS}
    groups: List[CommandGroup] = []
    if "active" in pending:
        groups.append(
            CommandGroup("power", CommandDescriptor.power(current.active), {"active": current.active})
        )
    if current.active and "rotation_speed" in pending:
        groups.append(
            CommandGroup(
                "speed",
                CommandDescriptor.wind_speed(current.rotation_speed),
                {"rotation_speed": current.rotation_speed},
            )
        )
    if current.active and "swing_enabled" in pending:
        groups.append(
            CommandGroup(
                "oscillation",
                CommandDescriptor.oscillation(current.swing_enabled),
                {"swing_enabled": current.swing_enabled},
            )
        )
    return groups


@dataclass
class DispatchOutcome:
    transport: TransportChoice
    acknowledged: Dict[str, Any] = field(default_factory=dict)
    failed_groups: List[str] = field(default_factory=list)
    skipped_groups: List[str] = field(default_factory=list)
    requests: int = 0
    fallback_used: bool = False
    forced_off: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed_groups

    @property
    def result(self) -> str:
        if self.forced_off:
            return "offline"
        if self.failed_groups:
            return "partial" if self.acknowledged else "failure"
        if not self.acknowledged:
            return "noop"
        return "success"


class Dispatcher:
    """Turn a state diff into transport commands for one device.

    Each acknowledged group is reported through ``on_acknowledged`` with
    exactly its fields; failed groups are not reported so the next cycle
    sends the same diff again.
    """

    def __init__(
        self,
        device: FanDeviceConfig,
        *,
        radio: Optional[RadioTransport] = None,
        cloud: Optional[SwitchBotCloudClient] = None,
        backoff: Optional[BackoffPolicy] = None,
        max_retries: int = 5,
        on_acknowledged: Optional[AcknowledgeCallback] = None,
        dry_run: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.device = device
        self.radio = radio
        self.cloud = cloud
        self.backoff = backoff or BackoffPolicy(base=1.0, factor=1.0, maximum=1.0)
        self.max_retries = max(0, max_retries)
        self.on_acknowledged = on_acknowledged
        self.dry_run = dry_run
        self.logger = logger or get_logger("switchbot.dispatch")

    @property
    def _context(self) -> Dict[str, Any]:
        return {"device_id": self.device.device_id}

    async def dispatch(self, current: FanState, baseline: FanState) -> DispatchOutcome:
        started = time.perf_counter()
        choice = select_transport(self.device, self.radio, self.cloud)
        outcome = DispatchOutcome(transport=choice)
        if choice is TransportChoice.OFFLINE:
            # Devices marked offline are expected to land here.
            level = logging.DEBUG if self.device.offline else logging.WARNING
            self.logger.log(
                level,
                "No transport available; reporting device as off",
                extra={**self._context, "connection_type": self.device.connection_type},
            )
            outcome.forced_off = True
        else:
            for group in plan_groups(current, baseline):
                await self._dispatch_group(choice, group, outcome)
            if outcome.requests == 0 and not outcome.skipped_groups:
                self.logger.debug("No pending changes to push", extra=self._context)
        record_dispatch(choice.value, outcome.result, time.perf_counter() - started)
        return outcome

    async def _dispatch_group(
        self, choice: TransportChoice, group: CommandGroup, outcome: DispatchOutcome
    ) -> None:
        if choice is TransportChoice.RADIO and group.name == "power":
            delivered = await self._radio_with_fallback(group, outcome)
        elif choice is TransportChoice.CLOUD or cloud_usable(self.device, self.cloud):
            delivered = await self._send_cloud(group, outcome)
        else:
            # Radio only carries power; finer groups wait for a cloud-capable cycle.
            self.logger.debug(
                "Change has no radio command; leaving it pending",
                extra={**self._context, "group": group.name},
            )
            outcome.skipped_groups.append(group.name)
            return
        if delivered:
            outcome.acknowledged.update(group.fields)
            if self.on_acknowledged is not None:
                self.on_acknowledged(group.fields)
        else:
            outcome.failed_groups.append(group.name)

    async def _radio_with_fallback(self, group: CommandGroup, outcome: DispatchOutcome) -> bool:
        if await self._send_radio(group, outcome):
            return True
        if not cloud_usable(self.device, self.cloud):
            return False
        self.logger.info(
            "Radio retries exhausted; falling back to cloud",
            extra={**self._context, "command": group.descriptor.command},
        )
        record_cloud_fallback("dispatch")
        outcome.fallback_used = True
        return await self._send_cloud(group, outcome)

    async def _send_radio(self, group: CommandGroup, outcome: DispatchOutcome) -> bool:
        if self.radio is None:
            raise ConfigurationError(f"{self.device.display_name} has no radio transport")
        command = group.descriptor.command
        if self.dry_run:
            self.logger.info("Dry-run: would send radio command", extra={**self._context, "command": command})
            return True
        attempts = self.max_retries + 1
        delays = self.backoff.iter_delays(attempts)
        for attempt in range(1, attempts + 1):
            outcome.requests += 1
            try:
                await self.radio.send(command)
                self.logger.info(
                    "Radio command acknowledged",
                    extra={**self._context, "command": command, "attempt": attempt},
                )
                return True
            except TransportError as exc:
                self.logger.warning(
                    "Radio command failed",
                    extra={**self._context, "command": command, "attempt": attempt, "error": str(exc)},
                )
            if attempt == attempts:
                break
            record_radio_retry()
            await asyncio.sleep(delays[attempt - 1])
        self.logger.error(
            "Exhausted retries sending radio command",
            extra={**self._context, "command": command, "attempts": attempts},
        )
        return False

    async def _send_cloud(self, group: CommandGroup, outcome: DispatchOutcome) -> bool:
        if self.cloud is None:
            raise ConfigurationError(f"{self.device.display_name} has no cloud client")
        descriptor = group.descriptor
        context = {**self._context, "command": descriptor.command, "parameter": descriptor.parameter}
        if self.dry_run:
            self.logger.info("Dry-run: would send cloud command", extra=context)
            return True
        outcome.requests += 1
        try:
            await self.cloud.send_command(self.device.device_id, descriptor)
        except TransportError as exc:
            self.logger.warning(
                "Cloud command failed",
                extra={**context, "status_code": exc.status_code, "error": str(exc)},
            )
            return False
        self.logger.info("Cloud command acknowledged", extra=context)
        return True

