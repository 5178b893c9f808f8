from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

import yaml

from .config import build_context, load_config
from .log_setup import configure_logging
from .orchestrator import EXIT_PRECONDITION, run_update
from .state_store import ReportStore

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="refurbminer-update",
        description="Update an installed RefurbMiner agent to the latest upstream version",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to updater.yaml (default: ~/.config/refurbminer/updater.yaml)",
    )
    parser.add_argument("--install-dir", type=Path, default=None, help="RefurbMiner directory")
    parser.add_argument("--log-file", type=Path, default=None, help="Append-only log file")
    parser.add_argument(
        "--no-notify", action="store_true", help="Do not report the update to the API"
    )
    parser.add_argument(
        "--no-launch", action="store_true", help="Update and build but do not start the worker"
    )
    parser.add_argument(
        "--status", action="store_true", help="Print the report of the last run and exit"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug output on console")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except (ValueError, OSError, yaml.YAMLError) as exc:
        print(f"Invalid updater configuration: {exc}", file=sys.stderr)
        raise SystemExit(EXIT_PRECONDITION) from exc

    if args.install_dir is not None:
        config = replace(config, install=replace(config.install, dir=args.install_dir.expanduser()))
    if args.log_file is not None:
        config = replace(config, logging=replace(config.logging, log_file=args.log_file.expanduser()))

    if args.status:
        report = ReportStore(config.state_dir).load()
        if report is None:
            print("No update has been recorded yet.")
            raise SystemExit(1)
        print(json.dumps(report.to_dict(), indent=2))
        raise SystemExit(0)

    configure_logging(config.logging.log_file, level=config.logging.level, verbose=args.verbose)
    LOGGER.info("Updating RefurbMiner in %s", config.install.dir)
    ctx = build_context(config)
    raise SystemExit(run_update(ctx, notify=not args.no_notify, launch=not args.no_launch))


if __name__ == "__main__":
    main()
