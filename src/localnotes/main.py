#!/usr/bin/env python
"""Main entry point for the localnotes MCP server."""
import argparse
import atexit
import logging
import os
import sys
from pathlib import Path

from localnotes.config import config
from localnotes.observability import METRICS_FILENAME, configure_logging, metrics
from localnotes.server.mcp_server import LocalNotesMcpServer
from localnotes.services.note_service import NoteService


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="localnotes MCP Server")
    parser.add_argument(
        "--store-dir",
        help="Root directory of the note store",
        type=str,
        default=os.environ.get("LOCALNOTES_STORE_DIR")
    )
    parser.add_argument(
        "--log-dir",
        help="Directory for rotating log files",
        type=str,
        default=os.environ.get("LOCALNOTES_LOG_DIR")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("LOCALNOTES_LOG_LEVEL", "INFO")
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.store_dir:
        config.store_dir = Path(args.store_dir).expanduser()
    if args.log_dir:
        config.log_dir = Path(args.log_dir).expanduser()
    config.log_level = args.log_level


def _save_metrics_on_exit():
    """Save metrics to disk on server shutdown."""
    if metrics.save_metrics():
        logging.getLogger(__name__).info("Metrics saved to disk on shutdown")


def main(argv=None):
    """Run the localnotes MCP server."""
    args = parse_args(argv)
    update_config(args)

    # Configure logging (console + persistent file logging with rotation)
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(log_dir=config.log_dir, level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")
        metrics.metrics_file = log_dir / METRICS_FILENAME

    # Register metrics save on shutdown
    atexit.register(_save_metrics_on_exit)

    try:
        service = NoteService(config.get_store_dir())
    except Exception as e:
        logger.error(f"Failed to open note store: {e}")
        sys.exit(1)

    try:
        logger.info(f"Starting localnotes MCP server for {service.root}")
        server = LocalNotesMcpServer(service=service)
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
