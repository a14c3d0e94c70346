"""
Cobbler configuration - environment loaders and the YAML node list.

Environment variables:
    COBBLER_CONFIG           Path to the node list (default: ./.cobbler.yaml)
    COBBLER_TIMEOUT          Request deadline; "45" = seconds, or "30s", "1m", "1m30s"
    COBBLER_DAEMON_PORT      Agent port (unset: hunt upward from 8080)
    COBBLER_DAEMON_HOSTNAME  Agent hostname for mDNS (default: system hostname)
    COBBLER_DAEMON_IP        Explicit IP to advertise over mDNS
    COBBLER_DAEMON_API_KEY   Agent API key (generated when absent)

Loaders never raise on bad environment values. They fall back to the default
and return a warning alongside the value, so callers decide how to report.

Node list format:

    nodes:
      - name: pi-kitchen
        address: 192.168.1.20:8080
        api_key: 3f1c...
      - address: "[fe80::1]:8080"
"""

import ipaddress
import logging
import os
import re
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Tuple

import yaml

from cobbler.errors import ConfigError
from cobbler.resolver import format_authority, normalize_address
from cobbler.types import PersistedNode, ServiceEntry

logger = logging.getLogger("cobbler.config")

DEFAULT_CONFIG_FILE = ".cobbler.yaml"
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_DISCOVERY_SECONDS = 5.0

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


# =============================================================================
# DURATIONS
# =============================================================================

def parse_duration(text: str) -> float:
    """
    Parse a duration into seconds.

    A bare integer is taken as seconds. Otherwise the value is a sequence of
    <number><unit> parts, units ms/s/m/h: "30s", "1m", "1m30s", "1.5h".

    Raises:
        ValueError: If the text is not a valid duration
    """
    value = str(text).strip().lower()
    if not value:
        raise ValueError("empty duration")

    if value.isdigit():
        return float(int(value))

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos == 0 or pos != len(value):
        raise ValueError(f"invalid duration: {text!r}")
    return total


def load_timeout(
    environ: Optional[Mapping[str, str]] = None,
    default: float = DEFAULT_TIMEOUT_SECONDS,
) -> Tuple[float, List[str]]:
    """Read COBBLER_TIMEOUT. Returns (seconds, warnings)."""
    env = os.environ if environ is None else environ
    raw = env.get("COBBLER_TIMEOUT")
    if raw is None or raw.strip() == "":
        return default, []

    try:
        seconds = parse_duration(raw)
    except ValueError:
        return default, [f"invalid COBBLER_TIMEOUT={raw!r}, using {default:g}s"]

    if seconds <= 0:
        return default, [f"COBBLER_TIMEOUT={raw!r} must be positive, using {default:g}s"]
    return seconds, []


# =============================================================================
# AGENT SETTINGS
# =============================================================================

@dataclass
class AgentSettings:
    """Startup configuration for the agent."""
    hostname: str
    port: Optional[int] = None  # None: hunt upward from the default port
    ip: Optional[str] = None
    api_key: Optional[str] = None


def system_hostname() -> str:
    """The system hostname without a trailing dot."""
    return socket.gethostname().rstrip(".") or "unknown"


def load_agent_settings(environ: Optional[Mapping[str, str]] = None) -> Tuple[AgentSettings, List[str]]:
    """
    Build agent settings from COBBLER_DAEMON_* variables.

    Returns:
        (settings, warnings) - invalid values are dropped and reported
    """
    env = os.environ if environ is None else environ
    warnings: List[str] = []

    port: Optional[int] = None
    raw_port = env.get("COBBLER_DAEMON_PORT", "").strip()
    if raw_port:
        try:
            port = int(raw_port)
            if not 0 < port < 65536:
                raise ValueError(raw_port)
        except ValueError:
            port = None
            warnings.append(f"invalid COBBLER_DAEMON_PORT={raw_port!r}, searching for a free port")

    hostname = env.get("COBBLER_DAEMON_HOSTNAME", "").strip().rstrip(".")
    if not hostname:
        hostname = system_hostname()

    ip: Optional[str] = None
    raw_ip = env.get("COBBLER_DAEMON_IP", "").strip()
    if raw_ip:
        try:
            ip = str(ipaddress.ip_address(raw_ip))
        except ValueError:
            warnings.append(f"invalid COBBLER_DAEMON_IP={raw_ip!r}, using automatic addresses")

    api_key = env.get("COBBLER_DAEMON_API_KEY") or None

    return AgentSettings(hostname=hostname, port=port, ip=ip, api_key=api_key), warnings


# =============================================================================
# NODE LIST
# =============================================================================

def resolve_config_path(explicit: Optional[str] = None) -> Tuple[Path, bool]:
    """
    Pick the node list path.

    Returns:
        (path, found) - found is True for an explicit path, or when the
        default file exists in the working directory
    """
    if explicit:
        return Path(explicit), True

    default_path = Path(DEFAULT_CONFIG_FILE)
    return default_path, default_path.exists()


def load_nodes(path: Path) -> List[PersistedNode]:
    """
    Load the persisted node list.

    A missing file is an empty list.

    Raises:
        ConfigError: If the file is unreadable or malformed
    """
    path = Path(path)
    if not path.exists():
        return []

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(str(path), f"cannot read file: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(str(path), f"invalid YAML: {e}")

    if data is None:
        return []
    if not isinstance(data, dict):
        raise ConfigError(str(path), "expected a mapping with a 'nodes' list")

    raw_nodes = data.get("nodes") or []
    if not isinstance(raw_nodes, list):
        raise ConfigError(str(path), "'nodes' must be a list")

    nodes = []
    for index, item in enumerate(raw_nodes):
        if not isinstance(item, dict) or not item.get("address"):
            raise ConfigError(str(path), f"node #{index + 1} has no address")
        nodes.append(PersistedNode.from_dict(item))

    logger.debug(f"Loaded {len(nodes)} nodes from {path}")
    return nodes


def save_nodes(path: Path, nodes: Iterable[PersistedNode]):
    """Write the node list, replacing the file."""
    path = Path(path)
    data = {"nodes": [n.to_dict() for n in nodes]}
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)


def merge_discovered(
    nodes: List[PersistedNode],
    entries: Iterable[ServiceEntry],
) -> Tuple[List[PersistedNode], int]:
    """
    Append discovered agents that aren't in the node list yet.

    Each entry contributes its first address. Existing rows (and their API
    keys) are kept as they are, including rows whose address does not parse.

    Returns:
        (merged nodes, number added)
    """
    merged = list(nodes)
    known = set()
    for node in merged:
        try:
            known.add(normalize_address(node.address))
        except ValueError as e:
            logger.warning(f"Ignoring unparseable configured node: {e}")
    added = 0

    for entry in entries:
        if not entry.first_address:
            continue
        address = format_authority(entry.first_address, entry.port)
        if normalize_address(address) in known:
            continue
        merged.append(PersistedNode(address=address, name=entry.id or None))
        known.add(normalize_address(address))
        added += 1

    return merged, added
