from types import SimpleNamespace
from typing import Any, List, Mapping

import pytest

from switchbot_fan_bridge.errors import TransportError
from switchbot_fan_bridge.normalizers import Channel
from switchbot_fan_bridge.radio import (
    RADIO_COMMANDS,
    SWITCHBOT_COMPANY_ID,
    BleakRadioTransport,
    RadioAdvertisementListener,
    decode_service_data,
    status_from_advertisement,
)
from switchbot_fan_bridge.registry import SubscriptionRegistry

MAC = bytes.fromhex("AABBCCDDEEFF")


def _payload(on: bool, speed: int) -> bytes:
    flags = 0x80 if on else 0x00
    return MAC + bytes([0x01, flags, 0x55, 0x80 | speed])


def _advertisement(data: bytes) -> SimpleNamespace:
    return SimpleNamespace(manufacturer_data={SWITCHBOT_COMPANY_ID: data})


def test_decode_status_payload() -> None:
    assert decode_service_data(_payload(True, 45)) == {"state": "on", "fanSpeed": 45}
    assert decode_service_data(_payload(False, 3)) == {"state": "off", "fanSpeed": 3}


def test_short_payload_is_ignored() -> None:
    assert decode_service_data(MAC + b"\x01") is None


def test_advertisement_without_switchbot_data() -> None:
    adv = SimpleNamespace(manufacturer_data={0x004C: _payload(True, 10)})
    assert status_from_advertisement(adv) is None
    assert status_from_advertisement(_advertisement(_payload(True, 10))) == {"state": "on", "fanSpeed": 10}


def test_radio_carries_power_commands_only() -> None:
    assert RADIO_COMMANDS["turnOn"] == bytes.fromhex("570101")
    assert RADIO_COMMANDS["turnOff"] == bytes.fromhex("570102")
    assert "setWindSpeed" not in RADIO_COMMANDS


@pytest.mark.asyncio
async def test_unsupported_radio_command_raises() -> None:
    transport = BleakRadioTransport("AA:BB:CC:DD:EE:FF")
    with pytest.raises(TransportError, match="not supported"):
        await transport.send("setWindSpeed")


@pytest.mark.asyncio
async def test_transport_without_address_is_unavailable() -> None:
    transport = BleakRadioTransport(None)
    assert transport.available is False
    with pytest.raises(TransportError):
        await transport.read_status()


def test_listener_routes_changed_advertisements() -> None:
    registry = SubscriptionRegistry()
    received: List[Mapping[str, Any]] = []
    registry.register(Channel.RADIO, "AA:BB:CC:DD:EE:FF", received.append)
    listener = RadioAdvertisementListener(registry)
    device = SimpleNamespace(address="aa:bb:cc:dd:ee:ff")

    listener.handle_advertisement(device, _advertisement(_payload(True, 20)))
    listener.handle_advertisement(device, _advertisement(_payload(True, 20)))
    listener.handle_advertisement(device, _advertisement(_payload(False, 20)))

    assert received == [{"state": "on", "fanSpeed": 20}, {"state": "off", "fanSpeed": 20}]


def test_listener_ignores_unknown_devices() -> None:
    registry = SubscriptionRegistry()
    received: List[Mapping[str, Any]] = []
    registry.register(Channel.RADIO, "AA:BB:CC:DD:EE:FF", received.append)
    listener = RadioAdvertisementListener(registry)

    listener.handle_advertisement(SimpleNamespace(address="11:22:33:44:55:66"), _advertisement(_payload(True, 5)))
    listener.handle_advertisement(SimpleNamespace(address="AA:BB:CC:DD:EE:FF"), _advertisement(b"\x00"))

    assert received == []
