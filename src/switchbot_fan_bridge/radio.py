"""BLE transport and advertisement listener for SwitchBot fans."""

from __future__ import annotations

import abc
import asyncio
import contextlib
from typing import Any, Dict, Mapping, Optional, Tuple

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .commands import TURN_OFF, TURN_ON
from .errors import TransportError
from .health import BackoffPolicy, HealthMonitor
from .logging import get_logger
from .metrics import record_inbound_update, record_transport_request
from .normalizers import Channel
from .registry import SubscriptionRegistry, normalize_key

SWITCHBOT_COMPANY_ID = 0x0969
WRITE_CHARACTERISTIC_UUID = "cba20002-224d-11e6-9fb8-0002a5d5c51b"

RADIO_COMMANDS: Mapping[str, bytes] = {
    TURN_ON: bytes.fromhex("570101"),
    TURN_OFF: bytes.fromhex("570102"),
}

# Manufacturer payload: 6 byte MAC, sequence, flags, battery, speed.
_STATUS_OFFSET = 6
_STATUS_LENGTH = _STATUS_OFFSET + 4


def decode_service_data(data: bytes) -> Optional[Dict[str, Any]]:
    """Decode a fan status advertisement into ``{"state", "fanSpeed"}``.

    Returns ``None`` when the payload is too short to carry a status.
    """

    if len(data) < _STATUS_LENGTH:
        return None
    flags = data[_STATUS_OFFSET + 1]
    speed = data[_STATUS_OFFSET + 3] & 0x7F
    return {"state": "on" if flags & 0x80 else "off", "fanSpeed": speed}


def status_from_advertisement(adv: AdvertisementData) -> Optional[Dict[str, Any]]:
    payload = adv.manufacturer_data.get(SWITCHBOT_COMPANY_ID)
    if payload is None:
        return None
    return decode_service_data(bytes(payload))


class RadioTransport(abc.ABC):
    """Short-range link to a single fan."""

    @property
    @abc.abstractmethod
    def available(self) -> bool:
        """Whether the transport can currently be used for this device."""

    @abc.abstractmethod
    async def send(self, command: str) -> None:
        """Send one named command; raises :class:`TransportError` on failure."""

    @abc.abstractmethod
    async def read_status(self) -> Mapping[str, Any]:
        """Return the latest decoded advertisement; raises on timeout."""


class BleakRadioTransport(RadioTransport):
    def __init__(self, address: Optional[str], *, scan_duration: float = 1.0, timeout: float = 10.0) -> None:
        self.address = address
        self.scan_duration = scan_duration
        self.timeout = timeout
        self.logger = get_logger("switchbot.radio")

    @property
    def available(self) -> bool:
        return bool(self.address)

    async def _find_device(self) -> BLEDevice:
        if not self.address:
            raise TransportError("No BLE address configured", transport="radio")
        try:
            device = await BleakScanner.find_device_by_address(self.address, timeout=self.scan_duration)
        except (BleakError, OSError) as exc:
            raise TransportError(f"BLE scan failed: {exc}", transport="radio") from exc
        if device is None:
            raise TransportError(f"BLE device {self.address} not found", transport="radio")
        return device

    async def send(self, command: str) -> None:
        if not self.available:
            raise TransportError("No BLE address configured", transport="radio")
        try:
            payload = RADIO_COMMANDS[command]
        except KeyError:
            raise TransportError(f"Command {command} is not supported over BLE", transport="radio") from None
        device = await self._find_device()
        try:
            async with BleakClient(device, timeout=self.timeout) as client:
                await client.write_gatt_char(WRITE_CHARACTERISTIC_UUID, payload, response=True)
        except (BleakError, asyncio.TimeoutError, OSError) as exc:
            record_transport_request("radio", command, "failure")
            raise TransportError(f"BLE write failed: {exc}", transport="radio") from exc
        record_transport_request("radio", command, "success")

    async def read_status(self) -> Mapping[str, Any]:
        if not self.available:
            raise TransportError("No BLE address configured", transport="radio")
        wanted = normalize_key(self.address or "")
        found: asyncio.Future[Dict[str, Any]] = asyncio.get_running_loop().create_future()

        def detection_callback(device: BLEDevice, adv: AdvertisementData) -> None:
            if found.done() or normalize_key(device.address) != wanted:
                return
            status = status_from_advertisement(adv)
            if status is not None:
                found.set_result(status)

        try:
            async with BleakScanner(detection_callback):
                return await asyncio.wait_for(found, timeout=self.scan_duration)
        except asyncio.TimeoutError as exc:
            record_transport_request("radio", "status", "failure")
            raise TransportError(
                f"No advertisement from {self.address} within {self.scan_duration}s", transport="radio"
            ) from exc
        except (BleakError, OSError) as exc:
            record_transport_request("radio", "status", "failure")
            raise TransportError(f"BLE scan failed: {exc}", transport="radio") from exc


class RadioAdvertisementListener:
    """Background BLE scan routing fan advertisements through the registry."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        *,
        health: Optional[HealthMonitor] = None,
        backoff: Optional[BackoffPolicy] = None,
        failure_threshold: int = 5,
        cooldown_seconds: float = 15.0,
    ) -> None:
        self.registry = registry
        self.logger = get_logger("switchbot.radio")
        self._health = health or HealthMonitor(
            ("radio",),
            failure_threshold=failure_threshold,
            cooldown_seconds=cooldown_seconds,
        )
        self._backoff = backoff or BackoffPolicy(base=1.0, factor=2.0, maximum=60.0)
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._last_seen: Dict[str, Tuple[str, int]] = {}

    def handle_advertisement(self, device: BLEDevice, adv: AdvertisementData) -> None:
        key = normalize_key(device.address)
        if not self.registry.is_registered(Channel.RADIO, key):
            return
        status = status_from_advertisement(adv)
        if status is None:
            return
        signature = (status["state"], status["fanSpeed"])
        if self._last_seen.get(key) == signature:
            return
        self._last_seen[key] = signature
        self.logger.debug("Fan advertisement", extra={"address": device.address, **status})
        record_inbound_update(Channel.RADIO.value, "received")
        self.registry.dispatch(Channel.RADIO, key, status)

    async def start(self) -> None:
        if self._task:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        self.logger.info("BLE advertisement listener started")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self.logger.info("BLE advertisement listener stopped")

    async def _run(self) -> None:
        failures = 0
        while not self._stop_event.is_set():
            allowed, remaining = await self._health.allow_attempt("radio")
            if not allowed:
                self.logger.warning(
                    "BLE listener suppressed after failures",
                    extra={"cooldown_seconds": round(remaining, 2)},
                )
                await self._sleep_with_stop(remaining)
                continue
            try:
                async with BleakScanner(self.handle_advertisement):
                    await self._health.record_success("radio")
                    failures = 0
                    await self._stop_event.wait()
            except asyncio.CancelledError:
                raise
            except (BleakError, OSError) as exc:
                failures += 1
                self.logger.warning("BLE scanner failed", extra={"error": str(exc), "failures": failures})
                await self._health.record_failure("radio", exc)
                await self._sleep_with_stop(self._backoff.delay(failures))

    async def _sleep_with_stop(self, delay: float) -> None:
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
