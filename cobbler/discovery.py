"""
Discovery - mDNS advertisement and browsing for cobbler agents.

Agents register a `_cobbler._tcp.local.` service named
`cobblerd-<first hostname label>` with a TXT record `id=<full hostname>`.
The tool browses for a fixed window and collects what it hears.

Components:
    - DiscoveryBackend: abstract register/browse interface
    - ZeroconfBackend: the real backend, built on python-zeroconf
    - dedupe_entries / discover: turn a raw browse into a display list

Usage:
    from cobbler.discovery import ZeroconfBackend, discover

    entries = discover(ZeroconfBackend(), timeout=5.0)
    for entry in entries:
        print(entry.instance_name, entry.addresses, entry.port)

Browsing is lazy: `browse()` returns a generator that starts listening on
first iteration and stops (closing its sockets) when the window ends.
"""

import logging
import queue
import socket
import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Union

from zeroconf import (
    Error as ZeroconfError,
    IPVersion,
    ServiceBrowser,
    ServiceInfo,
    ServiceStateChange,
    Zeroconf,
)

from cobbler.errors import DiscoveryError
from cobbler.types import INSTANCE_PREFIX, SERVICE_DOMAIN, SERVICE_TYPE, ServiceEntry

logger = logging.getLogger("cobbler.discovery")

# How long to wait for one announcement's SRV/TXT/A records (ms)
RESOLVE_TIMEOUT_MS = 3000


def service_fqdn(service_type: str = SERVICE_TYPE, domain: str = SERVICE_DOMAIN) -> str:
    """Fully qualified service type, e.g. _cobbler._tcp.local."""
    return f"{service_type.rstrip('.')}.{domain.strip('.')}."


def instance_name_for(hostname: str) -> str:
    """mDNS instance name for a host: cobblerd-<first label>."""
    return f"{INSTANCE_PREFIX}{host_label(hostname)}"


def host_label(hostname: str) -> str:
    """First dot-separated label of a hostname."""
    stripped = hostname.rstrip(".")
    return stripped.split(".")[0] or stripped


def parse_txt(properties: Mapping[Union[bytes, str], Optional[Union[bytes, str]]]) -> Dict[str, str]:
    """Decode TXT properties into a str -> str dict. Valueless keys map to ""."""
    parsed = {}
    for key, value in properties.items():
        if isinstance(key, bytes):
            key = key.decode("utf-8", errors="replace")
        if value is None:
            value = ""
        elif isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        parsed[key] = value
    return parsed


# =============================================================================
# BACKEND INTERFACE
# =============================================================================

class Registration(ABC):
    """Handle for an advertised service. shutdown() may be called repeatedly."""

    @abstractmethod
    def shutdown(self):
        pass


class DiscoveryBackend(ABC):
    """Register this process and browse for others."""

    @abstractmethod
    def register(
        self,
        service_type: str,
        domain: str,
        instance_name: str,
        port: int,
        txt_records: Mapping[str, str],
        hostname: Optional[str] = None,
        addresses: Optional[Sequence[str]] = None,
    ) -> Registration:
        """
        Advertise a service.

        Raises:
            DiscoveryError: If the service could not be registered
        """

    @abstractmethod
    def browse(self, service_type: str, domain: str, timeout: float) -> Iterator[ServiceEntry]:
        """
        Collect announcements for `timeout` seconds.

        Entries may repeat. The iterator cannot be restarted.

        Raises:
            DiscoveryError: On first iteration, if browsing cannot start
        """


# =============================================================================
# ZEROCONF BACKEND
# =============================================================================

def local_addresses() -> List[str]:
    """Non-loopback addresses of this host, IPv4 first."""
    found = []
    try:
        for info in socket.getaddrinfo(socket.gethostname(), None):
            addr = info[4][0]
            if addr not in found and not addr.startswith("127.") and addr != "::1":
                found.append(addr)
    except OSError:
        pass

    if not any(":" not in a for a in found):
        # Address of the interface holding the default route; no packet is sent
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                s.connect(("192.0.2.1", 9))
                found.insert(0, s.getsockname()[0])
        except OSError:
            pass

    return sorted(found, key=lambda a: ":" in a)


def entry_from_info(info: ServiceInfo, fqdn: str) -> ServiceEntry:
    """Convert a resolved zeroconf ServiceInfo into a ServiceEntry."""
    suffix = "." + fqdn
    instance = info.name[:-len(suffix)] if info.name.endswith(suffix) else info.name
    addresses = info.parsed_addresses(IPVersion.V4Only) + info.parsed_addresses(IPVersion.V6Only)
    txt = parse_txt(info.properties or {})
    return ServiceEntry(
        instance_name=instance,
        hostname=(info.server or "").rstrip("."),
        addresses=tuple(addresses),
        port=info.port or 0,
        id=txt.get("id", ""),
    )


class ZeroconfRegistration(Registration):
    """A registered zeroconf service and the Zeroconf instance serving it."""

    def __init__(self, zc: Zeroconf, info: ServiceInfo):
        self._zc = zc
        self._info = info
        self._closed = False
        self._lock = threading.Lock()

    def shutdown(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._zc.unregister_service(self._info)
        except (ZeroconfError, OSError) as e:
            logger.error(f"mDNS unregister error: {e}")
        finally:
            self._zc.close()
        logger.info("mDNS service unregistered")


class ZeroconfBackend(DiscoveryBackend):
    """DiscoveryBackend on top of python-zeroconf."""

    def __init__(self, ip_version: IPVersion = IPVersion.V4Only):
        self.ip_version = ip_version

    def _open(self, ip_version: Optional[IPVersion] = None) -> Zeroconf:
        try:
            return Zeroconf(ip_version=ip_version or self.ip_version)
        except (ZeroconfError, OSError) as e:
            raise DiscoveryError(f"create resolver: {e}") from e

    def register(
        self,
        service_type: str,
        domain: str,
        instance_name: str,
        port: int,
        txt_records: Mapping[str, str],
        hostname: Optional[str] = None,
        addresses: Optional[Sequence[str]] = None,
    ) -> Registration:
        fqdn = service_fqdn(service_type, domain)
        if addresses:
            addrs = list(addresses)
        else:
            addrs = local_addresses()
            if self.ip_version == IPVersion.V4Only:
                addrs = [a for a in addrs if ":" not in a]
        if not addrs:
            raise DiscoveryError("no usable network address to advertise")

        ip_version = IPVersion.All if any(":" in a for a in addrs) else self.ip_version
        server = f"{host_label(hostname or instance_name)}.{domain.strip('.')}."

        try:
            info = ServiceInfo(
                fqdn,
                f"{instance_name}.{fqdn}",
                port=port,
                properties=dict(txt_records),
                server=server,
                parsed_addresses=addrs,
            )
        except (ZeroconfError, ValueError) as e:
            raise DiscoveryError(f"create service info: {e}") from e

        zc = self._open(ip_version)
        try:
            zc.register_service(info)
        except (ZeroconfError, OSError) as e:
            zc.close()
            raise DiscoveryError(f"register service: {e}") from e

        return ZeroconfRegistration(zc, info)

    def browse(self, service_type: str, domain: str, timeout: float) -> Iterator[ServiceEntry]:
        fqdn = service_fqdn(service_type, domain)
        zc = self._open()
        found: "queue.Queue[ServiceEntry]" = queue.Queue()

        def on_change(zeroconf: Zeroconf, service_type: str, name: str, state_change: ServiceStateChange):
            if state_change not in (ServiceStateChange.Added, ServiceStateChange.Updated):
                return
            info = zeroconf.get_service_info(service_type, name, timeout=RESOLVE_TIMEOUT_MS)
            if info is None:
                logger.debug(f"Could not resolve {name}")
                return
            found.put(entry_from_info(info, fqdn))

        try:
            browser = ServiceBrowser(zc, fqdn, handlers=[on_change])
        except (ZeroconfError, OSError) as e:
            zc.close()
            raise DiscoveryError(f"browse: {e}") from e

        deadline = time.monotonic() + timeout
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    yield found.get(timeout=remaining)
                except queue.Empty:
                    break
        finally:
            browser.cancel()
            zc.close()


# =============================================================================
# HELPERS
# =============================================================================

def register_agent(
    backend: DiscoveryBackend,
    hostname: str,
    port: int,
    ip: Optional[str] = None,
) -> Optional[Registration]:
    """
    Advertise this agent. Returns None (after logging) if registration fails.
    """
    instance = instance_name_for(hostname)
    logger.info("Registering mDNS service:")
    logger.info(f"  Instance: {instance}")
    logger.info(f"  Host: {host_label(hostname)}.{SERVICE_DOMAIN}")
    logger.info(f"  Port: {port}")
    if ip:
        logger.info(f"Using explicit IP: {ip}")

    try:
        registration = backend.register(
            SERVICE_TYPE,
            SERVICE_DOMAIN,
            instance,
            port,
            {"id": hostname},
            hostname=hostname,
            addresses=[ip] if ip else None,
        )
    except DiscoveryError as e:
        logger.error(f"FAILED to register mDNS service, continuing without discovery: {e}")
        return None

    logger.info("mDNS service registered successfully")
    return registration


def dedupe_entries(entries: Iterable[ServiceEntry]) -> List[ServiceEntry]:
    """Collapse repeated announcements by instance name, keeping the first seen."""
    seen = set()
    unique = []
    for entry in entries:
        if entry.instance_name in seen:
            continue
        seen.add(entry.instance_name)
        unique.append(entry)
    return unique


def discover(
    backend: DiscoveryBackend,
    timeout: float,
    service_type: str = SERVICE_TYPE,
    domain: str = SERVICE_DOMAIN,
) -> List[ServiceEntry]:
    """
    Browse for agents and return one entry per instance, sorted by instance name.

    Raises:
        DiscoveryError: If browsing could not start
    """
    entries = dedupe_entries(backend.browse(service_type, domain, timeout))
    return sorted(entries, key=lambda e: e.instance_name)


def discover_or_empty(backend: DiscoveryBackend, timeout: float) -> List[ServiceEntry]:
    """discover(), degrading to no results when mDNS is unavailable."""
    try:
        return discover(backend, timeout)
    except DiscoveryError as e:
        logger.warning(f"Discovery failed: {e}")
        return []
