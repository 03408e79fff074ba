"""SwitchBot OpenAPI v1.1 client."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import time
import uuid
from typing import Any, Dict, Mapping, Optional

import httpx

from .commands import CommandDescriptor
from .errors import SUCCESS_STATUS_CODES, TransportError, describe_status_code
from .health import BackoffPolicy
from .logging import get_logger
from .metrics import record_transport_request

_RETRYABLE_HTTP = {429}


def sign_request(token: str, secret: str, timestamp: str, nonce: str) -> str:
    """Base64 HMAC-SHA256 of ``token + t + nonce`` keyed by the secret."""

    message = f"{token}{timestamp}{nonce}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _is_retryable(exc: TransportError) -> bool:
    code = exc.status_code
    return code is None or code in _RETRYABLE_HTTP or code >= 500


class SwitchBotCloudClient:
    """Signed requests against the SwitchBot cloud.

    Every request raises :class:`TransportError` on network failures,
    timeouts, unparseable bodies, and any status code outside 100/200,
    whether reported by HTTP or in the response body.
    """

    def __init__(
        self,
        token: Optional[str],
        secret: Optional[str],
        *,
        base_url: str = "https://api.switch-bot.com/v1.1",
        timeout: float = 10.0,
        max_retries: int = 5,
        retry_delay: float = 3.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.token = token
        self.secret = secret or ""
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(0, max_retries)
        self.retry_delay = max(0.0, retry_delay)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.logger = get_logger("switchbot.cloud")

    @property
    def configured(self) -> bool:
        return bool(self.token)

    def _headers(self) -> Dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        nonce = uuid.uuid4().hex
        return {
            "Authorization": self.token or "",
            "sign": sign_request(self.token or "", self.secret, timestamp, nonce),
            "nonce": nonce,
            "t": timestamp,
            "Content-Type": "application/json; charset=utf8",
        }

    async def _request(
        self, method: str, path: str, *, json: Optional[Mapping[str, Any]] = None
    ) -> Mapping[str, Any]:
        if not self.configured:
            raise TransportError("SwitchBot token is not configured", transport="cloud")
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, json=json, headers=self._headers())
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {exc}", transport="cloud") from exc
        if response.status_code not in SUCCESS_STATUS_CODES:
            raise TransportError(
                f"{method} {path} returned HTTP {response.status_code}: "
                f"{describe_status_code(response.status_code)}",
                transport="cloud",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError(f"{method} {path} returned invalid JSON", transport="cloud") from exc
        if not isinstance(data, Mapping):
            raise TransportError(f"{method} {path} returned a non-object body", transport="cloud")
        status_code = data.get("statusCode")
        if status_code not in SUCCESS_STATUS_CODES:
            raise TransportError(
                f"{method} {path} returned statusCode {status_code}: {describe_status_code(status_code)}",
                transport="cloud",
                status_code=status_code if isinstance(status_code, int) else None,
            )
        return data

    async def get_status(
        self,
        device_id: str,
        *,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> Mapping[str, Any]:
        """Fetch ``/devices/{id}/status`` and return its ``body`` object.

        Network failures, throttling, and server errors are retried
        ``max_retries`` times, ``retry_delay`` seconds apart (client
        defaults unless overridden per call).
        """

        retries = self.max_retries if max_retries is None else max(0, max_retries)
        delay = self.retry_delay if retry_delay is None else max(0.0, retry_delay)
        attempts = retries + 1
        delays = BackoffPolicy(base=delay, factor=1.0, maximum=delay).iter_delays(attempts)
        path = f"/devices/{device_id}/status"
        for attempt in range(1, attempts + 1):
            try:
                data = await self._request("GET", path)
            except TransportError as exc:
                record_transport_request("cloud", "status", "failure")
                if attempt == attempts or not _is_retryable(exc):
                    raise
                self.logger.debug(
                    "Cloud status pull failed; retrying",
                    extra={"device_id": device_id, "attempt": attempt, "error": str(exc)},
                )
                await asyncio.sleep(delays[attempt - 1])
                continue
            record_transport_request("cloud", "status", "success")
            body = data.get("body")
            return body if isinstance(body, Mapping) else {}
        raise AssertionError("unreachable")  # pragma: no cover

    async def send_command(self, device_id: str, descriptor: CommandDescriptor) -> Mapping[str, Any]:
        try:
            data = await self._request(
                "POST", f"/devices/{device_id}/commands", json=descriptor.to_payload()
            )
        except TransportError:
            record_transport_request("cloud", descriptor.command, "failure")
            raise
        record_transport_request("cloud", descriptor.command, "success")
        self.logger.debug(
            "Cloud command acknowledged",
            extra={"device_id": device_id, "command": descriptor.command, "parameter": descriptor.parameter},
        )
        return data

    async def setup_webhook(self, url: str) -> Mapping[str, Any]:
        return await self._request(
            "POST", "/webhook/setupWebhook", json={"action": "setupWebhook", "url": url, "deviceList": "ALL"}
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
