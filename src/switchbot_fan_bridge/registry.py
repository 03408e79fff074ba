"""Per-channel inbound subscription registry.

Controllers register a callback for their device key on each inbound
channel they listen to; the radio listener and the webhook endpoint
route decoded payloads through :meth:`SubscriptionRegistry.dispatch`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .logging import get_logger
from .normalizers import Channel

InboundCallback = Callable[[Mapping[str, Any]], Any]

_KEY_STRIP = re.compile(r"[^A-Z0-9]+")


def normalize_key(key: str) -> str:
    """Canonical device key: upper-case alphanumerics only.

    ``"aa:bb:cc:dd:ee:ff"`` and ``"AABBCCDDEEFF"`` map to the same key.
    """

    return _KEY_STRIP.sub("", str(key).upper())


@dataclass(frozen=True)
class Subscription:
    channel: Channel
    key: str


class SubscriptionRegistry:
    """Channel + device key -> callback lookup owned by the device manager."""

    def __init__(self) -> None:
        self._callbacks: Dict[Tuple[Channel, str], InboundCallback] = {}
        self.logger = get_logger("switchbot.devices")

    def register(self, channel: Channel, key: str, callback: InboundCallback) -> Subscription:
        subscription = Subscription(Channel(channel), normalize_key(key))
        if not subscription.key:
            raise ValueError("Subscription key must contain at least one alphanumeric character")
        slot = (subscription.channel, subscription.key)
        if slot in self._callbacks:
            raise ValueError(f"{subscription.channel.value} subscription already registered for {key}")
        self._callbacks[slot] = callback
        self.logger.debug(
            "Registered inbound subscription",
            extra={"channel": subscription.channel.value, "key": subscription.key},
        )
        return subscription

    def unregister(self, subscription: Subscription) -> None:
        self._callbacks.pop((subscription.channel, subscription.key), None)

    def is_registered(self, channel: Channel, key: str) -> bool:
        return (Channel(channel), normalize_key(key)) in self._callbacks

    def keys(self, channel: Channel) -> Tuple[str, ...]:
        channel = Channel(channel)
        return tuple(key for slot_channel, key in self._callbacks if slot_channel is channel)

    def dispatch(self, channel: Channel, key: str, payload: Mapping[str, Any]) -> Optional[Any]:
        """Deliver ``payload`` to the subscriber; ``None`` when nobody listens."""

        callback = self._callbacks.get((Channel(channel), normalize_key(key)))
        if callback is None:
            self.logger.debug(
                "No subscriber for inbound payload",
                extra={"channel": Channel(channel).value, "key": key},
            )
            return None
        return callback(payload)

    def __len__(self) -> int:
        return len(self._callbacks)
