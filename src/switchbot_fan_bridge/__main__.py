"""Entrypoint for running the SwitchBot fan bridge."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Iterable, List, Optional

from .api import ApiService
from .config import Config, load_config
from .controller import DeviceManager
from .health import BackoffPolicy, HealthMonitor
from .logging import configure_logging, get_logger
from .radio import RadioAdvertisementListener


async def _radio_loop(
    stop_event: asyncio.Event, manager: DeviceManager, health: HealthMonitor, config: Config
) -> None:
    logger = get_logger("switchbot.radio")
    listener = RadioAdvertisementListener(
        manager.registry,
        health=health,
        backoff=BackoffPolicy(
            base=config.radio_retry_delay,
            factor=2.0,
            maximum=max(config.radio_backoff_max, config.radio_retry_delay),
        ),
    )
    await listener.start()
    try:
        await stop_event.wait()
    finally:
        await listener.stop()
        logger.info("Radio loop stopped")


async def _api_loop(
    stop_event: asyncio.Event, config: Config, manager: DeviceManager, health: HealthMonitor
) -> None:
    logger = get_logger("switchbot.api")
    service = ApiService(config, manager, health=health)
    await service.start()
    try:
        await stop_event.wait()
    finally:
        await service.stop()
        logger.info("API loop stopped")


async def _run_async(config: Config) -> None:
    logger = get_logger("switchbot")
    stop_event = asyncio.Event()
    health = HealthMonitor(
        ("radio", "api"),
        failure_threshold=config.subsystem_failure_threshold,
        cooldown_seconds=config.subsystem_failure_cooldown,
    )
    manager = DeviceManager(config)

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    await manager.start()
    tasks: List[asyncio.Task[None]] = [
        asyncio.create_task(_api_loop(stop_event, config, manager, health)),
    ]
    if config.radio_scan_enabled and manager.uses_radio:
        tasks.append(asyncio.create_task(_radio_loop(stop_event, manager, health, config)))
    logger.info(
        "Bridge services started",
        extra={
            "devices": len(manager.controllers),
            "api_port": config.api_port,
            "radio_scan": config.radio_scan_enabled and manager.uses_radio,
            "dry_run": config.dry_run,
        },
    )

    try:
        await stop_event.wait()
    finally:
        await _shutdown_tasks(tasks, logger)
        await manager.stop()
        logger.info("Bridge shutdown complete")


async def _shutdown_tasks(
    tasks: Iterable[asyncio.Task[None]], logger: logging.Logger
) -> None:
    tasks = list(tasks)
    for task in tasks:
        task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await asyncio.gather(*tasks)
    logger.debug("Background tasks cancelled", extra={"tasks": len(tasks)})


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint used by setuptools."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("switchbot")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
