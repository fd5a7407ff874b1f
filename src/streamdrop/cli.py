"""``streamdrop`` command: load config and serve the app with uvicorn."""

import argparse
import logging
import sys
from pathlib import Path

import uvicorn

from streamdrop.config import StreamDropConfig, load_config
from streamdrop.logging_config import configure_logging
from streamdrop.server import create_app

logger = logging.getLogger("streamdrop")

# CLI flag dest -> ServerConfig attribute
_SERVER_OVERRIDES = ("host", "port", "log_level", "log_format", "shutdown_timeout")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="streamdrop",
        description="Chunked media upload and range-read streaming server",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("streamdrop.yaml"),
        help="YAML config file (default: %(default)s)",
    )
    parser.add_argument("--host", help="bind address, overrides server.host")
    parser.add_argument("--port", type=int, help="listen port, overrides server.port")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="overrides server.log_level",
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        help="'text' for humans, 'json' for log shippers",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=int,
        help="seconds to drain in-flight uploads on shutdown",
    )
    return parser.parse_args(argv)


def apply_overrides(config: StreamDropConfig, args: argparse.Namespace) -> None:
    """Copy every flag the user actually passed onto ``config.server``."""
    for name in _SERVER_OVERRIDES:
        value = getattr(args, name, None)
        if value is not None:
            setattr(config.server, name, value)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        logger.error("Config file not found: %s", args.config)
        sys.exit(1)
    except Exception as exc:
        logger.error("Failed to load config %s: %s", args.config, exc)
        sys.exit(1)

    apply_overrides(config, args)
    server = config.server
    configure_logging(level=server.log_level, fmt=server.log_format)

    logger.info(
        "Starting StreamDrop on %s:%d (storage=%s, sessions=%s, max upload=%d bytes)",
        server.host,
        server.port,
        config.storage.backend,
        config.metadata.engine,
        config.uploads.max_upload_size,
    )

    uvicorn.run(
        create_app(config),
        host=server.host,
        port=server.port,
        log_level=server.log_level.lower(),
        timeout_graceful_shutdown=server.shutdown_timeout,
        timeout_keep_alive=5,
    )


if __name__ == "__main__":
    main()
