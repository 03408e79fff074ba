"""Debounced mutation queue with an in-flight guard.

Local setters call :meth:`MutationQueue.notify`. Notifications inside one
debounce window collapse into a single flush; at most one flush runs at a
time per device, and a window that closes while a flush is running queues
exactly one follow-up flush.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from typing import Awaitable, Callable, Optional

from .logging import get_logger
from .metrics import set_update_in_progress

FlushCallback = Callable[[], Awaitable[None]]


class QueueState(str, enum.Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    DISPATCHING = "dispatching"


class MutationQueue:
    def __init__(
        self,
        device_id: str,
        flush: FlushCallback,
        push_rate: float,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.device_id = device_id
        self._flush = flush
        self._push_rate = max(0.0, push_rate)
        self.logger = logger or get_logger("switchbot.dispatch")
        self._state = QueueState.IDLE
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._rerun = False
        self._update_in_progress = False
        self._closed = False

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def update_in_progress(self) -> bool:
        return self._update_in_progress

    @property
    def busy(self) -> bool:
        """True while intent is waiting for or undergoing a dispatch."""

        return self._state is not QueueState.IDLE

    def notify(self) -> None:
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        if self._state is QueueState.IDLE:
            self._state = QueueState.DEBOUNCING
        self._handle = loop.call_later(self._push_rate, self._on_window_closed)

    def _on_window_closed(self) -> None:
        self._handle = None
        if self._update_in_progress:
            self._rerun = True
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _set_guard(self, value: bool) -> None:
        self._update_in_progress = value
        set_update_in_progress(self.device_id, value)

    async def _run(self) -> None:
        self._state = QueueState.DISPATCHING
        self._set_guard(True)
        try:
            while True:
                self._rerun = False
                try:
                    await self._flush()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    self.logger.exception("Dispatch cycle failed", extra={"device_id": self.device_id})
                if not self._rerun or self._closed:
                    break
                self.logger.debug("Running queued follow-up dispatch", extra={"device_id": self.device_id})
        finally:
            self._set_guard(False)
            self._state = QueueState.DEBOUNCING if self._handle is not None else QueueState.IDLE

    async def join(self) -> None:
        """Wait for the in-flight dispatch, if any."""

        task = self._task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def close(self) -> None:
        self._closed = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._state = QueueState.IDLE
