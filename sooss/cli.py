"""Command-line interface for sooss."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import fields, replace
from pathlib import Path
from typing import Dict, List, Optional

from . import constants
from .app import SoossApp
from .config import ConfigurationError, SoossConfig, load_config
from .state_file import OperationalState, load_state, parse_state_value, save_state

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sooss", description="SOOSS sensor telemetry acquisition and logging"
    )
    parser.add_argument(
        "-d",
        "--data-dir",
        type=Path,
        default=None,
        help=f"Directory for telemetry, logs and state (default: {constants.DEFAULT_DATA_DIR})",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help=f"Path to configuration file (default: <data-dir>/{constants.DEFAULT_CONFIG_FILENAME})",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every channel's reading each cycle",
    )
    parser.add_argument(
        "-t",
        "--calibrate",
        action="store_true",
        help="Enable the reference gas sensor to cross-check the O2 cell",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Start sampling")
    subparsers.add_parser("show-config", help="Print the resolved configuration and exit")
    subparsers.add_parser("show-state", help="Print the operational state and exit")

    set_parser = subparsers.add_parser(
        "set-state", help="Update keys in the operational state file"
    )
    set_parser.add_argument("assignments", nargs="+", metavar="KEY=VALUE")

    return parser


def _config_path(args: argparse.Namespace) -> Path:
    if args.config is not None:
        return args.config
    if args.data_dir is not None:
        return args.data_dir / constants.DEFAULT_CONFIG_FILENAME
    return constants.DEFAULT_CONFIG_PATH


def _parse_assignments(assignments: List[str]) -> Dict[str, object]:
    known = {item.name for item in fields(OperationalState)}
    updates: Dict[str, object] = {}
    for assignment in assignments:
        key, separator, value = assignment.partition("=")
        key = key.strip()
        if not separator or key not in known:
            raise ValueError(f"Unknown state assignment: {assignment}")
        updates[key] = parse_state_value(key, value)
    return updates


def _show_config(config: SoossConfig) -> None:
    print(f"Configuration loaded from {config.path!s}\n")
    for section in config.raw.sections():
        print(f"[{section}]")
        for key, value in config.raw[section].items():
            print(f"{key} = {value}")
        print()


def _show_state(path: Path, state: OperationalState) -> None:
    print(f"Operational state from {path!s}\n")
    for item in fields(OperationalState):
        print(f"{item.name}={int(getattr(state, item.name))}")


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(_config_path(args), data_dir=args.data_dir)
    except ConfigurationError as exc:
        print(f"FATAL: {exc}", file=sys.stderr)
        return 1

    if args.command == "start":
        return SoossApp.start(
            config, verbose=args.verbose, calibration_mode=args.calibrate
        )

    if args.command == "show-config":
        _show_config(config)
        return 0

    state_path = config.paths.state_file
    if args.command == "show-state":
        _show_state(state_path, load_state(state_path))
        return 0

    if args.command == "set-state":
        try:
            updates = _parse_assignments(args.assignments)
        except ValueError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 2
        state = replace(load_state(state_path), **updates).clamped()
        try:
            save_state(state_path, state)
        except OSError as exc:
            print(f"ERROR: could not save {state_path}: {exc}", file=sys.stderr)
            return 1
        _show_state(state_path, state)
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
