"""Periodic and follow-up status refreshes for one device."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional

from .logging import get_logger
from .metrics import record_refresh_skipped

RefreshCallback = Callable[[], Awaitable[object]]
BusyCheck = Callable[[], bool]


class RefreshScheduler:
    """Run ``refresh`` every ``interval`` seconds unless a push is in flight."""

    def __init__(
        self,
        device_id: str,
        refresh: RefreshCallback,
        interval: float,
        is_busy: BusyCheck,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.device_id = device_id
        self._refresh = refresh
        self.interval = interval
        self._is_busy = is_busy
        self.logger = logger or get_logger("switchbot.scheduler")
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._followup_handle: Optional[asyncio.TimerHandle] = None
        self._followup_task: Optional[asyncio.Task[bool]] = None
        self._refreshing = False

    @property
    def followup_pending(self) -> bool:
        return self._followup_handle is not None

    @property
    def refreshing(self) -> bool:
        return self._refreshing

    async def tick(self, reason: str = "interval") -> bool:
        """Run one refresh; returns False when skipped because of a guard.

        Only one refresh runs at a time; overlapping ticks are skipped.
        """

        if self._is_busy():
            record_refresh_skipped("update_in_progress")
            self.logger.debug(
                "Skipping refresh while a push is in progress",
                extra={"device_id": self.device_id, "reason": reason},
            )
            return False
        if self._refreshing:
            record_refresh_skipped("refresh_in_flight")
            self.logger.debug(
                "Skipping refresh while another refresh is running",
                extra={"device_id": self.device_id, "reason": reason},
            )
            return False
        self._refreshing = True
        try:
            await self._refresh()
        finally:
            self._refreshing = False
        return True

    def schedule_followup(self, delay: float) -> None:
        """Schedule one refresh after ``delay`` seconds, replacing any pending one."""

        if self._followup_handle is not None:
            self._followup_handle.cancel()
        loop = asyncio.get_running_loop()
        self._followup_handle = loop.call_later(max(0.0, delay), self._fire_followup)

    def _fire_followup(self) -> None:
        self._followup_handle = None
        if self._stop_event.is_set():
            return
        self._followup_task = asyncio.get_running_loop().create_task(self._run_followup())

    async def _run_followup(self) -> bool:
        try:
            return await self.tick(reason="followup")
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("Follow-up refresh failed", extra={"device_id": self.device_id})
            return False

    async def start(self) -> None:
        if self._task:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        self.logger.info(
            "Refresh scheduler started",
            extra={"device_id": self.device_id, "interval_seconds": self.interval},
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._followup_handle is not None:
            self._followup_handle.cancel()
            self._followup_handle = None
        tasks = [task for task in (self._task, self._followup_task) if task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.gather(*tasks)
        self._task = None
        self._followup_task = None
        self.logger.info("Refresh scheduler stopped", extra={"device_id": self.device_id})

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception("Refresh cycle failed", extra={"device_id": self.device_id})
            await self._sleep_with_stop(self.interval)

    async def _sleep_with_stop(self, delay: float) -> None:
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
