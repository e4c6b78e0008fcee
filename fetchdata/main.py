from __future__ import annotations

import asyncio
import logging
import signal

from fetchdata.adapters.web.server import WebControlPlane
from fetchdata.config import LaunchConfig
from fetchdata.core.events import EventBus
from fetchdata.core.orchestrator import build_controller
from fetchdata.core.subprocess_tracker import SubprocessTracker

logger = logging.getLogger("fetchdata")


def _setup_logging(log_file: str) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    try:
        handlers.append(logging.FileHandler(log_file))
    except OSError as e:
        print(f"Cannot open log file {log_file}: {e}")
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=handlers,
    )


async def main() -> None:
    # -- Configuration (bad values abort before anything is spawned) --
    config = LaunchConfig.from_env()
    _setup_logging(config.log_file)
    logger.info("FetchData launcher starting...")
    logger.info("Use tunnel: %s", config.use_tunnel)

    # -- Child process bookkeeping --
    tracker = SubprocessTracker(config.pid_file)
    tracker.cleanup_stale()
    tracker.install_atexit()

    event_bus = EventBus()
    controller = build_controller(config, event_bus=event_bus, tracker=tracker)
    logger.info("Network IP detected: %s", controller.network_info()["network_ip"])

    web_cp = WebControlPlane(controller, event_bus, port=config.control_port)

    stop_event = asyncio.Event()

    def handle_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    await web_cp.start()
    launch = asyncio.create_task(controller.start())
    logger.info("Launching services. Press Ctrl+C to stop.")

    await stop_event.wait()

    logger.info("Shutting down...")
    if not launch.done():
        launch.cancel()
        await asyncio.gather(launch, return_exceptions=True)
    await controller.stop()
    await web_cp.stop()
    logger.info("FetchData launcher stopped.")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
