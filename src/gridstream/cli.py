"""CLI entry point for gridstream."""

import argparse
import logging
import sys
from pathlib import Path

import uvicorn

from gridstream.config import load_config
from gridstream.engine import GridFsStorage
from gridstream.errors import ConfigurationError
from gridstream.logging_config import configure_logging
from gridstream.server import create_app


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="gridstream",
        description="gridstream - streaming multipart uploads into GridFS",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("gridstream.yaml"),
        help="Path to YAML configuration file (default: gridstream.yaml)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host address to bind to (overrides config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (overrides config)",
    )
    parser.add_argument(
        "--url",
        type=str,
        default=None,
        help="MongoDB connection string (overrides storage.gridfs.url)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config, default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        default=None,
        choices=["text", "json"],
        help="Log format: 'text' (human-readable) or 'json' (structured)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the gridstream CLI.

    Loads configuration, applies CLI overrides, builds the application and
    serves it with uvicorn.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].
    """
    args = parse_args(argv)

    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    logger = logging.getLogger("gridstream")

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        logger.error("Config file not found: %s", args.config)
        sys.exit(1)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        sys.exit(1)

    if args.host is not None:
        config.server.host = args.host
    if args.port is not None:
        config.server.port = args.port
    if args.url is not None:
        config.storage.url = args.url
    if args.log_level is not None:
        config.server.log_level = args.log_level
    if args.log_format is not None:
        config.server.log_format = args.log_format

    configure_logging(
        level=config.server.log_level,
        fmt=config.server.log_format,
    )

    try:
        storage = GridFsStorage(config.storage)
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(1)

    app = create_app(config, storage=storage)

    logger.info(
        "Starting gridstream on %s:%d (backend=%s, bucket=%s)",
        config.server.host,
        config.server.port,
        config.storage.backend,
        config.storage.bucket_name,
    )

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        timeout_graceful_shutdown=config.server.shutdown_timeout,
    )


if __name__ == "__main__":
    main()
