"""
Process configuration - environment loading and logging setup
"""

import os
import sys
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv
from loguru import logger

from .admission_queue import QueueConfig
from .route_selector import RoutingConfig
from .status_broadcaster import BroadcasterConfig
from .execution_engine import EngineConfig


def parse_env_number(name: str, default, cast=float):
    """Read a numeric environment variable, falling back to `default` when unset or malformed"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not a valid {cast.__name__}, using {default}")
        return default


def parse_env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AppConfig:
    """Everything a running service needs"""

    engine: EngineConfig = field(default_factory=EngineConfig)
    ws_host: str = "0.0.0.0"
    ws_port: int = 3000
    log_level: str = "INFO"
    log_file: Optional[str] = None
    simulate_latency: bool = True


def load_config(env_file: Optional[str] = None) -> AppConfig:
    """Build the configuration from the environment (and a .env file when present)"""
    load_dotenv(env_file)

    queue = QueueConfig(
        concurrency=parse_env_number('ORDER_QUEUE_CONCURRENCY', 10, int),
        rate_limit=parse_env_number('ORDER_QUEUE_RATE_LIMIT', 100, int),
        rate_window_seconds=parse_env_number('ORDER_QUEUE_RATE_WINDOW_SECONDS', 60.0),
        max_attempts=parse_env_number('ORDER_MAX_ATTEMPTS', 3, int),
        retry_base_delay_seconds=parse_env_number('ORDER_RETRY_BASE_DELAY_SECONDS', 1.0),
        backlog_threshold=parse_env_number('ORDER_QUEUE_BACKLOG_THRESHOLD', 50, int)
    )
    routing = RoutingConfig(
        quote_timeout_seconds=parse_env_number('QUOTE_TIMEOUT_SECONDS', 5.0)
    )
    engine = EngineConfig(
        queue=queue,
        routing=routing,
        broadcaster=BroadcasterConfig(),
        execution_timeout_seconds=parse_env_number('EXECUTION_TIMEOUT_SECONDS', 30.0)
    )

    return AppConfig(
        engine=engine,
        ws_host=os.getenv('WS_HOST', '0.0.0.0'),
        ws_port=parse_env_number('WS_PORT', 3000, int),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        log_file=os.getenv('LOG_FILE') or None,
        simulate_latency=parse_env_bool('SIMULATE_VENUE_LATENCY', True)
    )


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Route loguru output to stderr and, optionally, a rotating log file"""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
    if log_file:
        logger.add(
            log_file,
            rotation="1 day",
            retention="7 days",
            level=level.upper()
        )
