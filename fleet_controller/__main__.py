"""
Standalone entrypoint for running the pool controller and its HTTP API.

Usage:
    python -m fleet_controller [OPTIONS]
    fleet-controller [OPTIONS]  (after pip install)

Environment Variables:
    FLEET_DB_PATH: Database path (default: fleet.db)
    FLEET_DOCKER_HOST: Container engine address (default: local engine)
    FLEET_RETENTION_INTERVAL: Seconds between retention checks (default: 60.0)
    FLEET_RETENTION_DISABLED: Disable idle termination (default: false)
    FLEET_LOG_DIR: Directory for per-node logs (default: fleet-logs)
    FLEET_HOST: Address the HTTP API binds to (default: 127.0.0.1)
    FLEET_PORT: Port the HTTP API binds to (default: 8000)
"""

import argparse
import logging
import os
import sys

import uvicorn

from fleet_server.app import ServerSettings, app, parse_bool

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_INTERVAL = 60.0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="Fleet Controller - elastic pool of container-backed workers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  FLEET_DB_PATH              Database path (default: fleet.db)
  FLEET_DOCKER_HOST          Container engine address (default: local engine)
  FLEET_RETENTION_INTERVAL   Seconds between retention checks (default: 60.0)
  FLEET_RETENTION_DISABLED   Disable idle termination (default: false)
  FLEET_LOG_DIR              Directory for per-node logs (default: fleet-logs)
  FLEET_HOST / FLEET_PORT    HTTP bind address (default: 127.0.0.1:8000)

Note: Command-line arguments override environment variables.

Examples:
  # Run with default settings
  fleet-controller

  # Use a remote engine and a custom database
  fleet-controller --docker-host tcp://build-host:2375 --db-path /var/lib/fleet.db

  # Keep idle workers around (debugging)
  fleet-controller --retention-disabled --log-level DEBUG
        """,
    )

    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="Path to SQLite database file (default: FLEET_DB_PATH env or fleet.db)",
    )

    parser.add_argument(
        "--docker-host",
        type=str,
        default=None,
        help="Container engine address (default: FLEET_DOCKER_HOST env or local engine)",
    )

    parser.add_argument(
        "--retention-interval",
        type=float,
        default=None,
        help="Seconds between retention checks (default: FLEET_RETENTION_INTERVAL env or 60.0)",
    )

    parser.add_argument(
        "--retention-disabled",
        action="store_true",
        default=None,
        help="Never terminate idle workers (default: FLEET_RETENTION_DISABLED env)",
    )

    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Directory for per-node logs (default: FLEET_LOG_DIR env or fleet-logs)",
    )

    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="HTTP bind address (default: FLEET_HOST env or 127.0.0.1)",
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="HTTP port (default: FLEET_PORT env or 8000)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def get_database_path(args: argparse.Namespace) -> str:
    if args.db_path:
        return args.db_path
    return os.environ.get("FLEET_DB_PATH", "fleet.db")


def get_docker_host(args: argparse.Namespace) -> str | None:
    if args.docker_host:
        return args.docker_host
    return os.environ.get("FLEET_DOCKER_HOST") or None


def get_retention_interval(args: argparse.Namespace) -> float:
    """
    Get the retention check interval from CLI args or environment.

    Invalid values fall back to the default with a warning.
    """
    if args.retention_interval is not None:
        if args.retention_interval <= 0:
            logger.warning(
                f"Invalid interval={args.retention_interval}, "
                f"using default {DEFAULT_RETENTION_INTERVAL}"
            )
            return DEFAULT_RETENTION_INTERVAL
        return args.retention_interval

    raw = os.environ.get("FLEET_RETENTION_INTERVAL", str(DEFAULT_RETENTION_INTERVAL))
    try:
        interval = float(raw)
    except ValueError:
        logger.warning(
            f"Invalid FLEET_RETENTION_INTERVAL={raw}, "
            f"using default {DEFAULT_RETENTION_INTERVAL}"
        )
        return DEFAULT_RETENTION_INTERVAL
    if interval <= 0:
        logger.warning(
            f"Invalid FLEET_RETENTION_INTERVAL={interval}, "
            f"using default {DEFAULT_RETENTION_INTERVAL}"
        )
        return DEFAULT_RETENTION_INTERVAL
    return interval


def get_retention_disabled(args: argparse.Namespace) -> bool:
    if args.retention_disabled is not None:
        return args.retention_disabled
    return parse_bool(os.environ.get("FLEET_RETENTION_DISABLED"))


def get_log_dir(args: argparse.Namespace) -> str:
    if args.log_dir:
        return args.log_dir
    return os.environ.get("FLEET_LOG_DIR", "fleet-logs")


def get_bind_address(args: argparse.Namespace) -> tuple[str, int]:
    host = args.host or os.environ.get("FLEET_HOST", "127.0.0.1")
    if args.port is not None:
        return host, args.port
    try:
        return host, int(os.environ.get("FLEET_PORT", "8000"))
    except ValueError:
        logger.warning(f"Invalid FLEET_PORT={os.environ.get('FLEET_PORT')}, using 8000")
        return host, 8000


def build_settings(args: argparse.Namespace) -> ServerSettings:
    return ServerSettings(
        db_path=get_database_path(args),
        docker_host=get_docker_host(args),
        retention_interval=get_retention_interval(args),
        retention_disabled=get_retention_disabled(args),
        log_dir=get_log_dir(args),
    )


def main(argv: list[str] | None = None) -> int:
    """
    Main entrypoint for the controller.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = build_settings(args)
    host, port = get_bind_address(args)

    logger.info("Starting Fleet Controller")
    logger.info(f"  Database: {settings.db_path}")
    logger.info(f"  Container engine: {settings.docker_host or '(local)'}")
    logger.info(f"  Retention interval: {settings.retention_interval}s")
    logger.info(f"  Retention disabled: {settings.retention_disabled}")
    logger.info(f"  Node log directory: {settings.log_dir}")
    logger.info(f"  HTTP API: http://{host}:{port}")

    app.state.settings = settings

    try:
        uvicorn.run(app, host=host, port=port, log_level=args.log_level.lower())
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
