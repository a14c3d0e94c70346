"""
Target Resolver - Turn CLI arguments, the node list and discovery into targets.

Three sources, one of which wins:
    1. Explicit targets from the command line (host:port)
    2. Discovery results, when the operator asked for --all
    3. The persisted node list

Credentials always come from the node list, matched by normalized address.
The node's name and the agent's TXT id are display-only and never matched.

Usage:
    from cobbler.resolver import resolve_targets

    targets = resolve_targets(["10.0.0.5:8080"], nodes)
    for target in targets:
        print(target.url, target.api_key)
"""

import ipaddress
import logging
from typing import Dict, Iterable, List, Sequence, Tuple

from cobbler.types import DEFAULT_AGENT_PORT, PersistedNode, ServiceEntry, Target, TargetOrigin

logger = logging.getLogger("cobbler.resolver")


# =============================================================================
# ADDRESSES
# =============================================================================

def format_authority(host: str, port: int) -> str:
    """Join host and port for a URL authority, bracketing IPv6 hosts."""
    if ":" in host and not host.startswith("["):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _parse_port(value: str, address: str) -> int:
    if not value.isdigit():
        raise ValueError(f"invalid port in address {address!r}")
    port = int(value)
    if not 0 < port < 65536:
        raise ValueError(f"port out of range in address {address!r}")
    return port


def _is_ip_literal(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def split_host_port(address: str, default_port: int = DEFAULT_AGENT_PORT) -> Tuple[str, int]:
    """
    Split an address into (host, port).

    Accepts "host:port", "[v6]:port", "[v6]", a bare IPv6 literal or a bare
    host. A URL scheme and path are ignored.

    Raises:
        ValueError: If the address cannot be parsed
    """
    value = address.strip()
    for scheme in ("http://", "https://"):
        if value.lower().startswith(scheme):
            value = value[len(scheme):]
            break
    value = value.split("/", 1)[0]

    if not value:
        raise ValueError(f"empty address {address!r}")

    if value.startswith("["):
        end = value.find("]")
        if end == -1:
            raise ValueError(f"unterminated IPv6 bracket in {address!r}")
        host = value[1:end]
        rest = value[end + 1:]
        if not rest:
            port = default_port
        elif rest.startswith(":"):
            port = _parse_port(rest[1:], address)
        else:
            raise ValueError(f"unexpected text after IPv6 host in {address!r}")
    elif _is_ip_literal(value):
        # Bare IPv4 or IPv6 literal without a port
        host, port = value, default_port
    elif value.count(":") == 1:
        host, raw_port = value.split(":", 1)
        port = _parse_port(raw_port, address)
    elif ":" in value:
        host, raw_port = value.rsplit(":", 1)
        if not _is_ip_literal(host):
            raise ValueError(f"cannot parse address {address!r}")
        port = _parse_port(raw_port, address)
    else:
        host, port = value, default_port

    if not host:
        raise ValueError(f"missing host in address {address!r}")
    return host, port


def normalize_address(address: str, default_port: int = DEFAULT_AGENT_PORT) -> str:
    """
    Canonical host:port form used for matching and deduplication.

    Examples:
        "10.0.0.5:8080"        -> "10.0.0.5:8080"
        "::1"                  -> "[::1]:8080"
        "http://pi.local:9000/" -> "pi.local:9000"
    """
    host, port = split_host_port(address, default_port)
    return format_authority(host, port)


# =============================================================================
# RESOLUTION
# =============================================================================

def _index_nodes(nodes: Iterable[PersistedNode]) -> Dict[str, PersistedNode]:
    index: Dict[str, PersistedNode] = {}
    for node in nodes:
        try:
            key = normalize_address(node.address)
        except ValueError:
            continue
        index.setdefault(key, node)
    return index


def _dedupe(targets: Iterable[Target]) -> List[Target]:
    seen = set()
    unique = []
    for target in targets:
        if target.address in seen:
            continue
        seen.add(target.address)
        unique.append(target)
    return unique


def resolve_targets(
    explicit_targets: Sequence[str],
    persisted_nodes: Sequence[PersistedNode],
    discovery_requested: bool = False,
    discovery_results: Iterable[ServiceEntry] = (),
) -> List[Target]:
    """
    Merge the three target sources into one deduplicated list.

    Args:
        explicit_targets: host:port strings from the command line
        persisted_nodes: the saved node list, in file order
        discovery_requested: operator passed --all
        discovery_results: entries from a browse (used only with --all)

    Returns:
        Targets in source order, unique by normalized address. Empty inputs
        give an empty list.

    Raises:
        ValueError: If an explicit target is not a valid address
    """
    credentials = _index_nodes(persisted_nodes)
    targets: List[Target] = []

    if explicit_targets:
        for raw in explicit_targets:
            address = normalize_address(raw)
            node = credentials.get(address)
            targets.append(Target(
                address=address,
                origin=TargetOrigin.EXPLICIT,
                display_name=node.name if node else None,
                api_key=node.api_key if node else None,
            ))

    elif discovery_requested:
        for entry in discovery_results:
            if not entry.first_address:
                logger.warning(f"Skipping {entry.instance_name}: no address advertised")
                continue
            address = normalize_address(format_authority(entry.first_address, entry.port))
            node = credentials.get(address)
            targets.append(Target(
                address=address,
                origin=TargetOrigin.DISCOVERED,
                display_name=entry.id or entry.instance_name,
                api_key=node.api_key if node else None,
            ))

    else:
        for node in persisted_nodes:
            try:
                address = normalize_address(node.address)
            except ValueError as e:
                logger.warning(f"Skipping configured node: {e}")
                continue
            targets.append(Target(
                address=address,
                origin=TargetOrigin.CONFIGURED,
                display_name=node.name,
                api_key=node.api_key,
            ))

    return _dedupe(targets)

