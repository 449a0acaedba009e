import argparse
import json
import logging
import os
from logging.config import dictConfig
from typing import List, Optional

from aiohttp import web

logger = logging.getLogger(__name__)


def configure_logging(level: str = "DEBUG"):
    """
    Configure logging from the JSON dictConfig file named by LOGGING_CONFIG_FILE,
    falling back to a plain stream handler at the requested level.
    """
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger().setLevel(level)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="datahub-broker", description="Run the DataHub OAuth broker"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on. Overrides the PORT environment variable.",
    )
    parser.add_argument(
        "--log-level",
        default="DEBUG",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Root log level when LOGGING_CONFIG_FILE is not set.",
    )
    return parser.parse_args(argv)


def invoke(argv: Optional[List[str]] = None):
    args = parse_args(argv)
    configure_logging(args.log_level)

    from datahub.broker.app.config import Settings
    from datahub.broker.app.server import start_web_server

    settings = Settings()  # type: ignore
    port = args.port if args.port is not None else settings.http_port
    logger.info("Starting DataHub broker on port %d", port)
    web.run_app(start_web_server(settings), port=port)


if __name__ == "__main__":
    invoke()
