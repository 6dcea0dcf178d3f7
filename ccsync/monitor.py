"""
Command-line monitor: open a sync session and periodically log every domain's
aggregates until interrupted.

    python main.py --config config/ccsync.yaml --interval 5
"""

from __future__ import annotations

import argparse
import asyncio
from typing import List, Optional

import structlog
from prometheus_client import start_http_server

from ccsync.config import AppConfig, DomainConfig, load_config
from ccsync.errors import AuthError, ConfigError, NetworkError
from ccsync.logging_config import configure_logging
from ccsync.session import SyncSession

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_AUTH = 3
EXIT_NETWORK = 4


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Follow contact-center dashboard state")
    parser.add_argument("--config", help="Path to ccsync.yaml (default: config/ccsync.yaml)")
    parser.add_argument(
        "--interval",
        type=float,
        default=5.0,
        help="Seconds between aggregate log lines (default: 5)",
    )
    parser.add_argument("--campaign", help="Follow calls for this campaign id")
    parser.add_argument("--metrics-port", type=int, help="Serve Prometheus metrics on this port")
    parser.add_argument("--log-level", help="Override logging.level")
    return parser.parse_args(argv)


def apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    if args.campaign:
        current = config.domain("campaign_calls")
        config.domains["campaign_calls"] = DomainConfig(
            enabled=True,
            history_capacity=current.history_capacity,
            campaign_id=args.campaign,
        )
    if args.log_level:
        config.logging.level = args.log_level
    return config


async def run(config: AppConfig, interval: float, *, iterations: Optional[int] = None) -> None:
    """Log summaries every ``interval`` seconds; ``iterations`` bounds the loop."""
    async with SyncSession(config) as session:
        count = 0
        while iterations is None or count < iterations:
            await asyncio.sleep(interval)
            for name, summary in session.summaries().items():
                logger.info(
                    "Domain summary",
                    domain=name,
                    connection=session.connection.state.value,
                    **summary,
                )
            count += 1


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = apply_overrides(load_config(args.config), args)
    except ConfigError as exc:
        configure_logging()
        logger.error("Configuration error", error=str(exc))
        return EXIT_CONFIG

    configure_logging(config.logging.level, config.logging.format)
    if args.metrics_port:
        start_http_server(args.metrics_port)
        logger.info("Serving metrics", port=args.metrics_port)

    try:
        asyncio.run(run(config, args.interval))
    except AuthError as exc:
        logger.error("Authentication failed", error=str(exc))
        return EXIT_AUTH
    except NetworkError as exc:
        logger.error("Could not reach the dashboard server", error=str(exc))
        return EXIT_NETWORK
    except KeyboardInterrupt:
        logger.info("Monitor stopped")
    return EXIT_OK
