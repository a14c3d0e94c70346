#!/usr/bin/env python3
"""
COBBLER CLI - Main entry point for managing a fleet of cobbler agents.

Usage:
    python -m cobbler discover              # Browse the LAN for agents
    python -m cobbler discover -u           # ...and add them to .cobbler.yaml
    python -m cobbler status                # Status of every configured node
    python -m cobbler status --all          # Status of every discovered agent
    python -m cobbler status 10.0.0.5:8080  # Status of one agent
    python -m cobbler packages --full-upgrade pi-kitchen.local:8080
    python -m cobbler help status
"""

import argparse
import logging
import os
import sys


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cobbler",
        description="Cobbler - package status and upgrades across a fleet of Debian nodes"
    )
    parser.add_argument(
        "--config", "-c",
        default=os.environ.get("COBBLER_CONFIG"),
        help="Node list file (env COBBLER_CONFIG, default: ./.cobbler.yaml)"
    )
    parser.add_argument(
        "--timeout",
        help="Request timeout, e.g. 45, 30s, 1m (env COBBLER_TIMEOUT, default: 60s)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    commands = {}

    # discover command
    p_discover = subparsers.add_parser(
        "discover",
        help="Discover cobbler daemons on the local network"
    )
    p_discover.add_argument(
        "--timeout",
        dest="discovery_timeout",
        help="How long to browse (env COBBLER_TIMEOUT, default: 5s)"
    )
    p_discover.add_argument(
        "--update-config", "-u",
        action="store_true",
        help="Add newly discovered daemons to the config file"
    )
    commands["discover"] = p_discover

    # status command
    p_status = subparsers.add_parser(
        "status",
        help="Show outdated packages on targets"
    )
    p_status.add_argument(
        "--all", "-a",
        action="store_true",
        help="Target every daemon found by discovery"
    )
    p_status.add_argument(
        "targets",
        nargs="*",
        help="Agent addresses (host:port). Default: nodes from the config file"
    )
    commands["status"] = p_status

    # packages command
    p_packages = subparsers.add_parser(
        "packages",
        help="Run package operations on targets"
    )
    p_packages.add_argument(
        "--full-upgrade",
        action="store_true",
        required=True,
        help="Trigger a full upgrade (apt-get full-upgrade)"
    )
    p_packages.add_argument(
        "--all", "-a",
        action="store_true",
        help="Target every daemon found by discovery"
    )
    p_packages.add_argument(
        "targets",
        nargs="*",
        help="Agent addresses (host:port). Default: nodes from the config file"
    )
    commands["packages"] = p_packages

    # help command
    p_help = subparsers.add_parser(
        "help",
        help="Show help for a command"
    )
    p_help.add_argument(
        "topic",
        nargs="?",
        help="Command to describe"
    )
    p_help.set_defaults(root_parser=parser, command_parsers=commands)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 1

    # Import and run the appropriate command
    from cobbler.cli import run_command
    return run_command(args.command, args)


if __name__ == "__main__":
    sys.exit(main())
