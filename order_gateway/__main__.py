"""Run the order gateway HTTP server.

Usage:
    python -m order_gateway --config config.yaml
    python -m order_gateway --port 3001 --log-level DEBUG
"""
import argparse
import sys

from .config import GatewayConfig
from .gateway import OrderGateway
from .logging_setup import logger, setup_logging
from .secrets import load_credentials
from .server import GatewayServer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Authenticated order-execution gateway")
    parser.add_argument("--config", help="Path to YAML config (defaults built in)")
    parser.add_argument("--host", help="Override server.host")
    parser.add_argument("--port", type=int, help="Override server.port")
    parser.add_argument("--log-level", help="Override logging.log_level")
    parser.add_argument("--credentials", help="Path to JSON credentials file")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    config = GatewayConfig.from_yaml(args.config) if args.config else GatewayConfig.default()
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.log_level:
        config.logging.log_level = args.log_level.upper()

    setup_logging(log_file=config.logging.log_file, level=config.logging.log_level)

    try:
        credentials = load_credentials(args.credentials)
    except ValueError as e:
        logger.error(str(e))
        return 1

    logger.info(f"Loaded credentials | api_key={credentials.masked_key()}")
    gateway = OrderGateway(config, credentials)
    server = GatewayServer(
        gateway,
        host=config.server.host,
        port=config.server.port,
        cors_origin=config.server.cors_origin,
    )
    logger.info(f"Starting order gateway on http://{config.server.host}:{config.server.port}")
    server.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
