"""Device controllers and the manager that owns them."""

from __future__ import annotations

import abc
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type

import httpx

from .cloud import SwitchBotCloudClient
from .config import Config, FanDeviceConfig
from .dispatcher import Dispatcher, TransportChoice, cloud_usable, select_transport
from .errors import ConfigurationError, ErrorPolicy, MalformedPayloadError, TransportError
from .health import BackoffPolicy
from .logging import get_logger
from .metrics import record_cloud_fallback, record_inbound_update, record_refresh
from .mutations import MutationQueue
from .normalizers import Channel, normalize
from .projection import StateProjection
from .radio import BleakRadioTransport, RadioTransport
from .registry import Subscription, SubscriptionRegistry
from .scheduler import RefreshScheduler
from .state import MUTABLE_FIELDS, FanState, StateStore, commit

RadioFactory = Callable[[FanDeviceConfig], Optional[RadioTransport]]


class DeviceController(abc.ABC):
    """One device actor: canonical state, outbound queue, and refresh loop."""

    family: str = ""

    def __init__(
        self,
        device: FanDeviceConfig,
        config: Config,
        registry: SubscriptionRegistry,
        *,
        cloud: Optional[SwitchBotCloudClient] = None,
        radio: Optional[RadioTransport] = None,
    ) -> None:
        self.device = device
        self.config = config
        self.registry = registry
        self.cloud = cloud
        self.radio = radio
        self.projection = StateProjection()
        self.logger = get_logger("switchbot.devices")
        self.policy = ErrorPolicy(device.device_id, self.logger, self.projection)
        self._subscriptions: List[Subscription] = []

    @property
    def device_id(self) -> str:
        return self.device.device_id

    @abc.abstractmethod
    async def start(self) -> None:
        ...

    @abc.abstractmethod
    async def stop(self) -> None:
        ...

    @abc.abstractmethod
    async def refresh(self) -> bool:
        """Pull the device status once; False when the pull failed or went stale."""

    @abc.abstractmethod
    def apply_inbound(self, payload: Mapping[str, Any], channel: Channel) -> bool:
        """Apply an inbound channel payload; False when it was dropped."""

    @abc.abstractmethod
    def set_characteristic(self, name: str, value: Any) -> None:
        ...

    @abc.abstractmethod
    async def request_refresh(self) -> bool:
        """Refresh now unless a push is pending; True when it ran."""

    @abc.abstractmethod
    def snapshot(self) -> Dict[str, Any]:
        ...

    def _subscribe(self, channel: Channel, key: str) -> None:
        subscription = self.registry.register(
            channel, key, lambda payload: self.apply_inbound(payload, channel)
        )
        self._subscriptions.append(subscription)

    def _unsubscribe_all(self) -> None:
        while self._subscriptions:
            self.registry.unregister(self._subscriptions.pop())


class CirculatorFanController(DeviceController):
    """Battery circulator fan with oscillation and an auxiliary light."""

    family = "battery circulator fan"

    def __init__(
        self,
        device: FanDeviceConfig,
        config: Config,
        registry: SubscriptionRegistry,
        *,
        cloud: Optional[SwitchBotCloudClient] = None,
        radio: Optional[RadioTransport] = None,
    ) -> None:
        super().__init__(device, config, registry, cloud=cloud, radio=radio)
        self.store = StateStore(FanState.from_mapping(device.initial_state))
        self.post_push_refresh_delay = config.post_push_refresh_delay
        self.dispatcher = Dispatcher(
            device,
            radio=radio,
            cloud=cloud,
            backoff=BackoffPolicy(
                base=config.radio_retry_delay,
                factor=config.radio_backoff_factor,
                maximum=config.radio_backoff_max,
            ),
            max_retries=device.setting("max_retries", config),
            on_acknowledged=self.store.acknowledge,
            dry_run=config.dry_run,
        )
        self.queue = MutationQueue(
            device.device_id, self._push_cycle, device.setting("push_rate", config)
        )
        self.scheduler = RefreshScheduler(
            device.device_id,
            self.refresh,
            device.setting("refresh_rate", config),
            is_busy=lambda: self.queue.busy,
        )
        self.last_refresh: Optional[float] = None
        self._stopped = True

    # Host-facing write triggers.

    def set_active(self, value: bool) -> None:
        self.set_characteristic("active", bool(value))

    def set_rotation_speed(self, value: int) -> None:
        self.set_characteristic("rotation_speed", value)

    def set_swing_mode(self, value: bool) -> None:
        self.set_characteristic("swing_enabled", bool(value))

    def set_light_on(self, value: bool) -> None:
        self.set_characteristic("light_on", bool(value))

    def set_brightness(self, value: int) -> None:
        self.set_characteristic("brightness", value)

    def set_characteristic(self, name: str, value: Any) -> None:
        if name not in MUTABLE_FIELDS:
            raise KeyError(f"{name} is not writable")
        self.store.apply_local(name, value)
        self._commit()
        self.logger.debug(
            "Queued local change",
            extra={"device_id": self.device_id, "field": name, "value": getattr(self.store.current, name)},
        )
        self.queue.notify()

    def _commit(self) -> None:
        self.projection.apply(commit(self.store.current))

    def apply_inbound(self, payload: Mapping[str, Any], channel: Channel) -> bool:
        channel = Channel(channel)
        try:
            mutation = normalize(payload, channel, self.store.current)
            self.store.apply_inbound(mutation)
            self._commit()
        except Exception as exc:
            record_inbound_update(channel.value, "dropped")
            self.policy.handle(exc, f"inbound_{channel.value}")
            return False
        record_inbound_update(channel.value, "applied")
        self.logger.debug(
            "Applied inbound update",
            extra={"device_id": self.device_id, "channel": channel.value, "fields": sorted(mutation)},
        )
        return True

    async def _cloud_status(self) -> Mapping[str, Any]:
        if self.cloud is None:
            raise ConfigurationError(f"{self.device.display_name} has no cloud client")
        return await self.cloud.get_status(
            self.device_id,
            max_retries=self.device.setting("max_retries", self.config),
            retry_delay=self.device.setting("delay_between_retries", self.config),
        )

    async def _pull_status(self, choice: TransportChoice) -> Tuple[Mapping[str, Any], Channel]:
        if choice is TransportChoice.RADIO:
            if self.radio is None:
                raise ConfigurationError(f"{self.device.display_name} has no radio transport")
            try:
                return await self.radio.read_status(), Channel.RADIO
            except TransportError as exc:
                if not cloud_usable(self.device, self.cloud):
                    raise
                self.logger.info(
                    "Radio status pull failed; falling back to cloud",
                    extra={"device_id": self.device_id, "error": str(exc)},
                )
                record_cloud_fallback("refresh")
        return await self._cloud_status(), Channel.CLOUD

    async def refresh(self) -> bool:
        transport = "none"
        try:
            choice = select_transport(self.device, self.radio, self.cloud)
            transport = choice.value
            if choice is TransportChoice.OFFLINE:
                self.store.force_off()
                self._commit()
                record_refresh(transport, "offline")
                self.logger.debug(
                    "No transport for refresh; reporting device as off",
                    extra={"device_id": self.device_id, "connection_type": self.device.connection_type},
                )
                return True
            generation = self.store.generation
            raw, channel = await self._pull_status(choice)
            transport = channel.value
            mutation = normalize(raw, channel, self.store.current)
        except Exception as exc:
            record_refresh(transport, "failure")
            self.policy.handle(exc, "refresh")
            return False
        if self.store.generation != generation:
            # Local intent or a push landed while the pull was in flight.
            record_refresh(transport, "stale")
            self.logger.debug(
                "Discarding status pulled before a local change",
                extra={"device_id": self.device_id, "channel": channel.value},
            )
            if not self._stopped:
                self.scheduler.schedule_followup(self.post_push_refresh_delay)
            return False
        self.store.apply_inbound(mutation)
        self._commit()
        record_refresh(transport, "success")
        self.last_refresh = time.time()
        return True

    async def request_refresh(self) -> bool:
        return await self.scheduler.tick(reason="manual")

    async def _push_cycle(self) -> None:
        try:
            outcome = await self.dispatcher.dispatch(self.store.current, self.store.baseline)
            if outcome.forced_off:
                self.store.force_off()
            self._commit()
        except Exception as exc:
            self.policy.handle(exc, "dispatch")
        finally:
            if not self._stopped:
                self.scheduler.schedule_followup(self.post_push_refresh_delay)

    async def start(self) -> None:
        self._stopped = False
        self._commit()
        if self.device.uses_radio and self.device.ble_mac:
            self._subscribe(Channel.RADIO, self.device.ble_mac)
        if self.device.webhook:
            self._subscribe(Channel.WEBHOOK, self.device_id)
        await self.scheduler.start()
        self.logger.info(
            "Device controller started",
            extra={
                "device_id": self.device_id,
                "device_name": self.device.display_name,
                "connection_type": self.device.connection_type,
            },
        )

    async def stop(self) -> None:
        self._stopped = True
        self._unsubscribe_all()
        await self.scheduler.stop()
        await self.queue.close()
        self.logger.info("Device controller stopped", extra={"device_id": self.device_id})

    def snapshot(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "name": self.device.display_name,
            "device_type": self.device.device_type,
            "connection_type": self.device.connection_type,
            "state": self.store.current.as_dict(),
            "pending": self.store.pending(),
            "projection": self.projection.snapshot(),
            "update_in_progress": self.queue.update_in_progress,
            "queue_state": self.queue.state.value,
            "last_refresh": self.last_refresh,
        }


CONTROLLER_FAMILIES: Dict[str, Type[DeviceController]] = {
    "battery circulator fan": CirculatorFanController,
    "circulator fan": CirculatorFanController,
}


class DeviceManager:
    """Build one controller per configured device and route inbound events."""

    def __init__(
        self,
        config: Config,
        *,
        registry: Optional[SubscriptionRegistry] = None,
        cloud: Optional[SwitchBotCloudClient] = None,
        radio_factory: Optional[RadioFactory] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config
        self.registry = registry or SubscriptionRegistry()
        self.cloud = cloud or SwitchBotCloudClient(
            config.token,
            config.secret,
            base_url=config.cloud_base_url,
            timeout=config.cloud_timeout,
            max_retries=config.max_retries,
            retry_delay=config.delay_between_retries,
            client=http_client,
        )
        self._radio_factory = radio_factory or self._default_radio
        self.logger = get_logger("switchbot.devices")
        self._controllers: Dict[str, DeviceController] = {}
        self.webhook_registered = False
        self._build()

    def _default_radio(self, device: FanDeviceConfig) -> Optional[RadioTransport]:
        if not device.uses_radio:
            return None
        return BleakRadioTransport(
            device.ble_mac,
            scan_duration=device.setting("scan_duration", self.config),
            timeout=self.config.radio_timeout,
        )

    def _build(self) -> None:
        for device in self.config.devices:
            family = CONTROLLER_FAMILIES.get(device.device_type.strip().lower())
            if family is None:
                self.logger.warning(
                    "Unsupported device type; skipping",
                    extra={"device_id": device.device_id, "device_type": device.device_type},
                )
                continue
            self._controllers[device.device_id] = family(
                device,
                self.config,
                self.registry,
                cloud=self.cloud,
                radio=self._radio_factory(device),
            )

    @property
    def controllers(self) -> Mapping[str, DeviceController]:
        return dict(self._controllers)

    def get(self, device_id: str) -> DeviceController:
        return self._controllers[device_id]

    def snapshots(self) -> List[Dict[str, Any]]:
        return [controller.snapshot() for controller in self._controllers.values()]

    @property
    def uses_radio(self) -> bool:
        return any(controller.device.uses_radio for controller in self._controllers.values())

    async def start(self) -> None:
        for controller in self._controllers.values():
            await controller.start()
        await self.register_webhook()
        self.logger.info("Device manager started", extra={"devices": len(self._controllers)})

    async def stop(self) -> None:
        for controller in self._controllers.values():
            await controller.stop()
        await self.cloud.aclose()
        self.logger.info("Device manager stopped")

    async def register_webhook(self) -> bool:
        wants_webhook = any(controller.device.webhook for controller in self._controllers.values())
        if not wants_webhook or not self.config.webhook_url:
            return False
        if not self.cloud.configured:
            self.logger.warning("Webhook requested but no SwitchBot token is configured")
            return False
        try:
            await self.cloud.setup_webhook(self.config.webhook_url)
        except TransportError as exc:
            self.logger.warning(
                "Webhook registration failed",
                extra={"url": self.config.webhook_url, "status_code": exc.status_code, "error": str(exc)},
            )
            return False
        self.webhook_registered = True
        self.logger.info("Webhook registered", extra={"url": self.config.webhook_url})
        return True

    def handle_webhook(self, payload: Any) -> str:
        """Route one webhook event; returns ``applied``, ``dropped`` or ``ignored``."""

        if not isinstance(payload, Mapping):
            raise MalformedPayloadError("Webhook body must be a JSON object")
        if payload.get("eventType") != "changeReport":
            return "ignored"
        context = payload.get("context")
        if not isinstance(context, Mapping) or not context.get("deviceMac"):
            raise MalformedPayloadError("Webhook context with deviceMac is required")
        result = self.registry.dispatch(Channel.WEBHOOK, str(context["deviceMac"]), context)
        if result is None:
            return "ignored"
        return "applied" if result else "dropped"
