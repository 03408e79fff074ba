from typing import Any, List, Mapping, Tuple

import pytest

from switchbot_fan_bridge.commands import CommandDescriptor
from switchbot_fan_bridge.config import FanDeviceConfig
from switchbot_fan_bridge.dispatcher import (
    DispatchOutcome,
    Dispatcher,
    TransportChoice,
    plan_groups,
    select_transport,
)
from switchbot_fan_bridge.errors import ConfigurationError, TransportError
from switchbot_fan_bridge.health import BackoffPolicy
from switchbot_fan_bridge.radio import RadioTransport
from switchbot_fan_bridge.state import FanState, StateStore


class FakeRadio(RadioTransport):
    def __init__(self, failures: int = 0, available: bool = True) -> None:
        self.failures = failures
        self._available = available
        self.sent: List[str] = []

    @property
    def available(self) -> bool:
        return self._available

    async def send(self, command: str) -> None:
        self.sent.append(command)
        if len(self.sent) <= self.failures:
            raise TransportError("no ack", transport="radio")

    async def read_status(self) -> Mapping[str, Any]:
        return {"state": "off"}


class FakeCloud:
    def __init__(self, configured: bool = True, fail: bool = False) -> None:
        self.configured = configured
        self.fail = fail
        self.commands: List[Tuple[str, CommandDescriptor]] = []

    async def send_command(self, device_id: str, descriptor: CommandDescriptor) -> Mapping[str, Any]:
        self.commands.append((device_id, descriptor))
        if self.fail:
            raise TransportError("Device is offline", transport="cloud", status_code=161)
        return {"statusCode": 100}


_NO_WAIT = BackoffPolicy(base=0.0, factor=1.0, maximum=0.0)


def _device(connection_type: str, **kwargs: Any) -> FanDeviceConfig:
    return FanDeviceConfig(device_id="AABBCCDDEEFF", connection_type=connection_type, **kwargs)


def _dispatcher(device: FanDeviceConfig, radio=None, cloud=None, **kwargs: Any) -> Dispatcher:
    return Dispatcher(device, radio=radio, cloud=cloud, backoff=_NO_WAIT, **kwargs)


def test_transport_precedence() -> None:
    hybrid = _device("BLE/OpenAPI")
    assert select_transport(hybrid, FakeRadio(), FakeCloud()) is TransportChoice.RADIO
    assert select_transport(hybrid, FakeRadio(available=False), FakeCloud()) is TransportChoice.CLOUD
    assert select_transport(hybrid, None, FakeCloud(configured=False)) is TransportChoice.OFFLINE
    assert select_transport(_device("BLE"), None, FakeCloud()) is TransportChoice.OFFLINE
    assert select_transport(_device("OpenAPI"), FakeRadio(), FakeCloud()) is TransportChoice.CLOUD
    assert select_transport(_device("BLE", offline=True), FakeRadio(), FakeCloud()) is TransportChoice.RADIO
    assert select_transport(_device("BLE", offline=True), None, FakeCloud()) is TransportChoice.OFFLINE


def test_disabled_cloud_service_is_a_configuration_error() -> None:
    device = _device("OpenAPI", enable_cloud_service=False)
    with pytest.raises(ConfigurationError):
        select_transport(device, None, FakeCloud())


def test_plan_orders_power_speed_then_oscillation() -> None:
    current = FanState(active=True, rotation_speed=40, swing_enabled=True)
    groups = plan_groups(current, FanState())
    assert [group.name for group in groups] == ["power", "speed", "oscillation"]
    assert groups[1].descriptor == CommandDescriptor("setWindSpeed", "40")
    assert groups[2].descriptor == CommandDescriptor("setOscillation", "on")


def test_plan_skips_speed_while_off() -> None:
    current = FanState(active=False, rotation_speed=40)
    assert plan_groups(current, FanState()) == []


@pytest.mark.asyncio
async def test_no_diff_sends_nothing() -> None:
    radio, cloud = FakeRadio(), FakeCloud()
    state = FanState(active=True, rotation_speed=20)
    outcome = await _dispatcher(_device("BLE/OpenAPI"), radio, cloud).dispatch(state, state)

    assert outcome.requests == 0
    assert outcome.result == "noop"
    assert radio.sent == []
    assert cloud.commands == []


@pytest.mark.asyncio
async def test_offline_device_forced_off_without_requests() -> None:
    outcome = await _dispatcher(_device("BLE")).dispatch(FanState(active=True), FanState())

    assert outcome.transport is TransportChoice.OFFLINE
    assert outcome.forced_off is True
    assert outcome.requests == 0


@pytest.mark.asyncio
async def test_cloud_sends_groups_in_order() -> None:
    cloud = FakeCloud()
    store = StateStore()
    store.apply_local("active", True)
    store.apply_local("rotation_speed", 0)
    store.apply_local("swing_enabled", True)
    dispatcher = _dispatcher(_device("OpenAPI"), cloud=cloud, on_acknowledged=store.acknowledge)

    outcome = await dispatcher.dispatch(store.current, store.baseline)

    assert [descriptor.to_payload()["command"] for _, descriptor in cloud.commands] == [
        "turnOn",
        "setOscillation",
    ]
    assert outcome.result == "success"
    assert store.pending() == {}


@pytest.mark.asyncio
async def test_radio_exhaustion_falls_back_to_cloud_once() -> None:
    radio, cloud = FakeRadio(failures=99), FakeCloud()
    dispatcher = _dispatcher(_device("BLE/OpenAPI"), radio, cloud, max_retries=2)

    outcome = await dispatcher.dispatch(FanState(active=True), FanState())

    assert radio.sent == ["turnOn", "turnOn", "turnOn"]
    assert len(cloud.commands) == 1
    assert cloud.commands[0][1].command == "turnOn"
    assert outcome.fallback_used is True
    assert outcome.acknowledged == {"active": True}
    assert outcome.requests == 4


@pytest.mark.asyncio
async def test_radio_retry_succeeds_without_cloud() -> None:
    radio, cloud = FakeRadio(failures=1), FakeCloud()
    outcome = await _dispatcher(_device("BLE/OpenAPI"), radio, cloud, max_retries=3).dispatch(
        FanState(active=False), FanState(active=True)
    )

    assert radio.sent == ["turnOff", "turnOff"]
    assert cloud.commands == []
    assert outcome.fallback_used is False
    assert outcome.ok is True


@pytest.mark.asyncio
async def test_failed_group_leaves_baseline_untouched() -> None:
    cloud = FakeCloud(fail=True)
    store = StateStore()
    store.apply_local("active", True)
    dispatcher = _dispatcher(_device("OpenAPI"), cloud=cloud, on_acknowledged=store.acknowledge)

    outcome = await dispatcher.dispatch(store.current, store.baseline)

    assert outcome.result == "failure"
    assert outcome.failed_groups == ["power"]
    assert store.baseline.active is False
    assert store.pending() == {"active": True}


@pytest.mark.asyncio
async def test_radio_only_device_leaves_speed_pending() -> None:
    radio = FakeRadio()
    store = StateStore()
    store.apply_local("active", True)
    store.apply_local("rotation_speed", 70)
    dispatcher = _dispatcher(_device("BLE"), radio, on_acknowledged=store.acknowledge)

    outcome = await dispatcher.dispatch(store.current, store.baseline)

    assert radio.sent == ["turnOn"]
    assert outcome.skipped_groups == ["speed"]
    assert store.pending() == {"rotation_speed": 70}


@pytest.mark.asyncio
async def test_hybrid_device_sends_speed_over_cloud() -> None:
    radio, cloud = FakeRadio(), FakeCloud()
    current = FanState(active=True, rotation_speed=70)
    outcome = await _dispatcher(_device("BLE/OpenAPI"), radio, cloud).dispatch(
        current, FanState(active=True)
    )

    assert radio.sent == []
    assert [descriptor.parameter for _, descriptor in cloud.commands] == ["70"]
    assert outcome.transport is TransportChoice.RADIO


@pytest.mark.asyncio
async def test_dispatch_raises_when_cloud_disabled() -> None:
    device = _device("OpenAPI", enable_cloud_service=False)
    with pytest.raises(ConfigurationError):
        await _dispatcher(device, cloud=FakeCloud()).dispatch(FanState(active=True), FanState())


@pytest.mark.asyncio
async def test_dry_run_acknowledges_without_sending() -> None:
    cloud = FakeCloud()
    outcome = await _dispatcher(_device("OpenAPI"), cloud=cloud, dry_run=True).dispatch(
        FanState(active=True), FanState()
    )

    assert cloud.commands == []
    assert outcome.acknowledged == {"active": True}


@pytest.mark.asyncio
async def test_device_marked_offline_still_uses_radio() -> None:
    radio, cloud = FakeRadio(), FakeCloud()
    device = _device("BLE/OpenAPI", offline=True)

    outcome = await _dispatcher(device, radio, cloud).dispatch(FanState(active=True), FanState())

    assert outcome.transport is TransportChoice.RADIO
    assert outcome.forced_off is False
    assert radio.sent == ["turnOn"]
    assert outcome.acknowledged == {"active": True}


@pytest.mark.asyncio
async def test_missing_transport_is_a_configuration_error() -> None:
    group = plan_groups(FanState(active=True), FanState())[0]
    dispatcher = _dispatcher(_device("BLE/OpenAPI"))
    outcome = DispatchOutcome(transport=TransportChoice.RADIO)

    with pytest.raises(ConfigurationError, match="no radio transport"):
        await dispatcher._send_radio(group, outcome)
    with pytest.raises(ConfigurationError, match="no cloud client"):
        await dispatcher._send_cloud(group, outcome)
    assert outcome.requests == 0
