#!/usr/bin/env python3
"""
CLI command implementations for the cobbler tool.

Results go to stdout, log warnings to stderr. Every command returns a process
exit code: 0 on success, 1 when any target failed or nothing could be done.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from cobbler.client import AgentClient
from cobbler.config import (
    DEFAULT_DISCOVERY_SECONDS,
    load_nodes,
    load_timeout,
    merge_discovered,
    parse_duration,
    resolve_config_path,
    save_nodes,
)
from cobbler.discovery import ZeroconfBackend, discover_or_empty
from cobbler.errors import ConfigError
from cobbler.fanout import fan_out
from cobbler.resolver import resolve_targets
from cobbler.types import FanOutResult, OperationKind, PersistedNode, ServiceEntry, StatusResult, Target

logger = logging.getLogger("cobbler.cli")


def run_command(command: str, args) -> int:
    """Dispatch to the appropriate command handler."""
    handlers = {
        "discover": cmd_discover,
        "status": cmd_status,
        "packages": cmd_packages,
        "help": cmd_help,
    }
    handler = handlers.get(command)
    if handler:
        return handler(args)
    print(f"Unknown command: {command}")
    return 1


# =============================================================================
# HELPERS
# =============================================================================

def format_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    """Left-aligned columns separated by two spaces."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    lines = []
    for row in [list(headers)] + [list(r) for r in rows]:
        cells = [cell.ljust(widths[i]) for i, cell in enumerate(row)]
        lines.append("  ".join(cells).rstrip())
    return "\n".join(lines)


def request_timeout(args) -> float:
    """
    Request deadline from --timeout, else COBBLER_TIMEOUT, else 60s.

    Raises:
        ValueError: If --timeout is not a valid duration
    """
    raw = getattr(args, "timeout", None)
    if raw:
        seconds = parse_duration(raw)
        if seconds <= 0:
            raise ValueError(f"timeout must be positive: {raw!r}")
        return seconds

    seconds, warnings = load_timeout()
    for warning in warnings:
        logger.warning(warning)
    return seconds


def discovery_window(args) -> float:
    """Browse window from discover --timeout, else COBBLER_TIMEOUT, else 5s."""
    raw = getattr(args, "discovery_timeout", None)
    if raw:
        seconds = parse_duration(raw)
        if seconds <= 0:
            raise ValueError(f"timeout must be positive: {raw!r}")
        return seconds

    seconds, warnings = load_timeout(default=DEFAULT_DISCOVERY_SECONDS)
    for warning in warnings:
        logger.warning(warning)
    return seconds


def config_path(args) -> Tuple[Path, bool]:
    explicit = getattr(args, "config", None) or os.environ.get("COBBLER_CONFIG")
    return resolve_config_path(explicit)


def load_config(args) -> Tuple[bool, List[PersistedNode]]:
    """
    Load the node list for a command.

    Returns:
        (found, nodes) - no nodes when no config file was found

    Raises:
        ConfigError: If the file exists but cannot be used
    """
    path, found = config_path(args)
    if not found:
        return False, []
    return True, load_nodes(path)


def target_label(target: Target) -> str:
    if target.display_name and target.display_name != target.address:
        return f"{target.display_name} ({target.address})"
    return target.address


def browse(window: float) -> List[ServiceEntry]:
    return discover_or_empty(ZeroconfBackend(), window)


def _resolve(args, nodes: List[PersistedNode]) -> List[Target]:
    discover_all = bool(getattr(args, "all", False))
    entries: List[ServiceEntry] = []
    if discover_all and not args.targets:
        entries = browse(discovery_window(args))
    return resolve_targets(args.targets or [], nodes, discover_all, entries)


def _prepare(args) -> Tuple[Optional[float], List[Target]]:
    """Shared setup for fan-out commands. Returns (timeout, targets), timeout None on error or no targets."""
    try:
        timeout = request_timeout(args)
    except ValueError as e:
        print(f"error: invalid timeout: {e}")
        return None, []

    try:
        found, nodes = load_config(args)
    except ConfigError as e:
        print(f"error: failed to load config: {e}")
        return None, []

    try:
        targets = _resolve(args, nodes)
    except ValueError as e:
        print(f"error: {e}")
        return None, []

    if not targets:
        if not found:
            print("No config file was found or set.")
        print("No targets found.")
        return None, []

    return timeout, targets


# =============================================================================
# DISCOVER COMMAND
# =============================================================================

def cmd_discover(args) -> int:
    """Browse for agents and optionally record them in the node list."""
    try:
        window = discovery_window(args)
    except ValueError as e:
        print(f"error: invalid timeout: {e}")
        return 1

    print(f"Discovery will take {window:g} seconds")
    entries = browse(window)

    if not entries:
        print("No cobbler daemons found.")
    else:
        rows = [
            [e.id, e.hostname, ", ".join(e.addresses), str(e.port), e.instance_name]
            for e in entries
        ]
        print(format_table(["ID", "HOST", "ADDRESS", "PORT", "INSTANCE"], rows))

    if not args.update_config:
        return 0

    path, _ = config_path(args)
    try:
        nodes = load_nodes(path)
    except ConfigError as e:
        print(f"error: failed to load config: {e}")
        return 1

    merged, added = merge_discovered(nodes, entries)
    if not added:
        print("No new daemons found to add to configuration.")
        return 0

    try:
        save_nodes(path, merged)
    except OSError as e:
        print(f"error: failed to save config: {e}")
        return 1

    print(f"Configuration updated: {path}")
    return 0


# =============================================================================
# STATUS COMMAND
# =============================================================================

def _status_cell(outcome) -> str:
    if not outcome.ok:
        return f"error ({outcome.error.kind}): {outcome.error.message}"
    status: StatusResult = outcome.value
    if status.is_upgrading:
        return f"{status.message} (upgrade running)"
    return status.message


def print_status(result: FanOutResult[StatusResult]):
    rows = [[target_label(o.target), _status_cell(o)] for o in result]
    print(format_table(["TARGET", "STATUS"], rows))

    for outcome in result.succeeded:
        if outcome.value.updates:
            print()
            print(f"{target_label(outcome.target)}:")
            for name in outcome.value.updates:
                print(f"  {name}")


def cmd_status(args) -> int:
    """Query package status on each target."""
    timeout, targets = _prepare(args)
    if timeout is None:
        return 1

    client = AgentClient(timeout=timeout)
    result = fan_out(targets, client.operation(OperationKind.STATUS), timeout)
    print_status(result)
    return 1 if result.had_failures else 0


# =============================================================================
# PACKAGES COMMAND
# =============================================================================

def cmd_packages(args) -> int:
    """Trigger a full upgrade on each target."""
    if not getattr(args, "full_upgrade", False):
        print("error: no package operation given, use --full-upgrade")
        return 1

    timeout, targets = _prepare(args)
    if timeout is None:
        return 1

    client = AgentClient(timeout=timeout)
    result = fan_out(targets, client.operation(OperationKind.FULL_UPGRADE), timeout)

    rows = []
    for outcome in result:
        if outcome.ok:
            cell = outcome.value
        else:
            cell = f"error ({outcome.error.kind}): {outcome.error.message}"
        rows.append([target_label(outcome.target), cell])
    print(format_table(["TARGET", "STATUS"], rows))
    return 1 if result.had_failures else 0


# =============================================================================
# HELP COMMAND
# =============================================================================

def cmd_help(args) -> int:
    """General help, or help for one command."""
    topic = getattr(args, "topic", None)
    if not topic:
        args.root_parser.print_help()
        return 0

    command_parser = args.command_parsers.get(topic)
    if command_parser is None:
        print(f"Unknown command: {topic}")
        return 1
    command_parser.print_help()
    return 0
