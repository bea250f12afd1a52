"""Command line entry point for inspecting service settings.

    pm-config show [--format yaml|json] [--env-file PATH]
    pm-config check [--env-file PATH]
"""

import argparse
import sys
from typing import List, Optional

import yaml
from loguru import logger
from rich.console import Console

from productmaster import __version__
from productmaster.config import ConfigError, Settings, load_config
from productmaster.logger import LoggerIOError, new_logger


def _build_parser() -> argparse.ArgumentParser:
    """Build the top-level argument parser with all subcommands.

    Returns:
        Configured ArgumentParser instance.
    """
    parser = argparse.ArgumentParser(
        prog="pm-config",
        description="Product master settings and logging checks",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # -- show ----------------------------------------------------------------
    show_parser = subparsers.add_parser("show", help="Print the effective settings")
    show_parser.add_argument(
        "--format",
        choices=["yaml", "json"],
        default="yaml",
        help="Output format (default: yaml)",
    )
    show_parser.add_argument("--env-file", default=None, help="Optional .env file")

    # -- check ---------------------------------------------------------------
    check_parser = subparsers.add_parser(
        "check", help="Load settings and write a test entry through the logger"
    )
    check_parser.add_argument("--env-file", default=None, help="Optional .env file")

    return parser


def _show(settings: Settings, output_format: str) -> None:
    console = Console(soft_wrap=True)
    data = settings.redacted()
    if output_format == "json":
        console.print_json(data=data)
    else:
        console.print(
            yaml.safe_dump(data, sort_keys=False).rstrip(),
            markup=False,
            highlight=False,
            emoji=False,
        )


def _check(settings: Settings) -> None:
    log_config = settings.log
    with new_logger(log_config.level, log_config.format, log_config.output) as log:
        log.with_fields(
            {
                "app": settings.app.name,
                "env": settings.get_env(),
                "version": settings.app.version,
            }
        ).info("configuration ok")
        log.sync()


def main(argv: Optional[List[str]] = None) -> None:
    """Parse arguments and dispatch to the requested subcommand."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    logger.debug("CLI command: {}", args.command)

    try:
        settings = load_config(env_file=args.env_file)
        if args.command == "show":
            _show(settings, args.format)
        elif args.command == "check":
            _check(settings)
    except (ConfigError, LoggerIOError) as e:
        logger.error("{}", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
