"""
Service entry point - engine plus WebSocket gateway
"""

import asyncio
import signal
from typing import Optional

from loguru import logger

from .config import AppConfig, load_config, configure_logging
from .execution_engine import ExecutionEngine
from .venue_client import default_venues
from .websocket_gateway import WebSocketGateway


async def run_service(config: AppConfig, stop_event: Optional[asyncio.Event] = None) -> None:
    """Run until `stop_event` is set (or SIGINT/SIGTERM when none is given)"""
    engine = ExecutionEngine(
        config.engine,
        venues=default_venues(simulate_latency=config.simulate_latency)
    )
    gateway = WebSocketGateway(engine, host=config.ws_host, port=config.ws_port)

    if stop_event is None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                pass

    await engine.start()
    await gateway.start()
    try:
        await stop_event.wait()
    finally:
        await gateway.stop()
        await engine.stop(timeout=config.engine.execution_timeout_seconds)


def main() -> None:
    config = load_config()
    configure_logging(config.log_level, config.log_file)
    logger.info("Starting swap execution service")
    asyncio.run(run_service(config))


if __name__ == "__main__":
    main()
