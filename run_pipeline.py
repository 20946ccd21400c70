"""
Main entry point for the Facebook funnel analytics sync.

    python run_pipeline.py          # run one sync cycle now and exit
    python run_pipeline.py serve    # HTTP server + daily scheduled sync

A cycle lists every ad account visible to the token, skips inactive ones,
aggregates campaign insights of the trailing 7-day window into funnels and
upserts one row per funnel. Failures in one account are logged but don't
stop the other accounts.
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

from aiohttp import web

from funnel_sync.config import SyncConfig
from funnel_sync.errors import OrchestrationError
from funnel_sync.server import create_app
from funnel_sync.store import DltFunnelStore
from funnel_sync.sync import FunnelSync

LOG_DIR = Path(__file__).parent / "logs"


def setup_logging(name: str = "pipeline"):
    """Configure logging to file and console."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = LOG_DIR / f"{name}_{timestamp}.log"

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )
    return logging.getLogger(__name__)


def run_once() -> int:
    """Run a single sync cycle. Returns the process exit code."""
    logger = setup_logging()
    config = SyncConfig.from_dlt()
    sync = FunnelSync(config, DltFunnelStore.from_config(config))

    try:
        report = asyncio.run(sync.run())
    except OrchestrationError as e:
        logger.error(f"❌ Sync cycle ended early: {e}")
        return 1

    if report.failed_accounts:
        logger.warning(f"Failed: {len(report.failed_accounts)} accounts")
        for account in report.failed_accounts:
            logger.warning(f"  - {account.account_name}: {account.error}")
    return 0


def serve():
    """Start the HTTP server with the daily scheduled sync."""
    logger = setup_logging("server")
    config = SyncConfig.from_dlt()

    logger.info(f"Server running on port {config.server_port}")
    logger.info(
        f"Visit http://localhost:{config.server_port}/test-facebook-connection "
        "to test your Facebook connection"
    )
    web.run_app(create_app(config), host=config.server_host, port=config.server_port)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Facebook Ads funnel analytics sync")
    parser.add_argument(
        "command",
        nargs="?",
        default="sync",
        choices=["sync", "serve"],
        help="'sync' runs one cycle now (default), 'serve' starts the HTTP server and scheduler",
    )
    args = parser.parse_args(argv)

    if args.command == "serve":
        serve()
        return 0
    return run_once()


if __name__ == "__main__":
    sys.exit(main())
