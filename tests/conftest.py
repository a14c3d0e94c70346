"""
Shared pytest fixtures for CI-safe testing.

All fixtures use temporary directories, fake package managers and fake mDNS
backends - no apt, no multicast, no fixed ports.
"""

import sys
from pathlib import Path

# Add project root to sys.path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import shutil
import tempfile
import threading
from typing import Generator, List, Optional

import pytest

from cobbler.agent import CobblerAgent, bind_server, make_handler
from cobbler.auth import ApiKeyAuth
from cobbler.discovery import DiscoveryBackend, Registration
from cobbler.errors import DiscoveryError, PackageManagerError
from cobbler.packages import PackageEngine, PackageManager
from cobbler.types import ServiceEntry

TEST_API_KEY = "test-key-123"


class FakeRegistration(Registration):
    def __init__(self):
        self.shutdown_calls = 0

    def shutdown(self):
        self.shutdown_calls += 1


class FakeDiscoveryBackend(DiscoveryBackend):
    """Replays canned entries; records registrations."""

    def __init__(self, entries: Optional[List[ServiceEntry]] = None, fail: bool = False):
        self.entries = list(entries or [])
        self.fail = fail
        self.registrations = []
        self.browse_calls = []

    def register(self, service_type, domain, instance_name, port, txt_records, hostname=None, addresses=None):
        if self.fail:
            raise DiscoveryError("multicast unavailable")
        registration = FakeRegistration()
        self.registrations.append({
            "service_type": service_type,
            "domain": domain,
            "instance_name": instance_name,
            "port": port,
            "txt_records": dict(txt_records),
            "hostname": hostname,
            "addresses": addresses,
            "handle": registration,
        })
        return registration

    def browse(self, service_type, domain, timeout):
        self.browse_calls.append((service_type, domain, timeout))
        if self.fail:
            raise DiscoveryError("multicast unavailable")
        for entry in self.entries:
            yield entry


class FakePackageManager(PackageManager):
    """
    In-memory package manager.

    With block=True, full_upgrade() waits on `release` so tests can observe
    the Upgrading state.
    """

    def __init__(self, updates=None, supported: bool = True, block: bool = False, fail: bool = False):
        self.updates = list(updates or [])
        self.supported = supported
        self.fail = fail
        self.block = block
        self.release = threading.Event()
        self.started = threading.Event()
        self.finished = threading.Event()
        self.upgrade_calls = 0
        self.refresh_calls = 0
        self.list_error: Optional[str] = None

    def is_supported(self) -> bool:
        return self.supported

    def refresh_index(self):
        self.refresh_calls += 1

    def list_upgradable(self):
        if self.list_error:
            raise PackageManagerError(self.list_error)
        return list(self.updates)

    def full_upgrade(self):
        self.upgrade_calls += 1
        self.started.set()
        try:
            if self.block:
                self.release.wait(timeout=10)
            if self.fail:
                raise PackageManagerError("full upgrade failed with status 100")
            self.updates = []
        finally:
            self.finished.set()


def make_entry(label: str, address: str = "192.168.1.10", port: int = 8080, id: Optional[str] = None) -> ServiceEntry:
    return ServiceEntry(
        instance_name=f"cobblerd-{label}",
        hostname=f"{label}.local",
        addresses=(address,),
        port=port,
        id=id if id is not None else label,
    )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Provides a temporary directory for tests.

    Automatically cleaned up after test completes.
    """
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def config_file(temp_dir: Path) -> Path:
    """A node list with two nodes, one of them keyed."""
    path = temp_dir / ".cobbler.yaml"
    path.write_text(
        "nodes:\n"
        "  - name: pi-kitchen\n"
        "    address: 10.0.0.5:8080\n"
        "    api_key: K\n"
        "  - address: 10.0.0.6:8080\n"
    )
    return path


@pytest.fixture
def fake_backend() -> FakeDiscoveryBackend:
    return FakeDiscoveryBackend()


@pytest.fixture
def fake_package_manager() -> FakePackageManager:
    manager = FakePackageManager(updates=["libc6", "vim"], block=True)
    yield manager
    manager.release.set()


@pytest.fixture
def agent_server(fake_package_manager: FakePackageManager):
    """
    A live agent on 127.0.0.1 with an ephemeral port.

    Yields (base_url, agent). The package manager blocks in full_upgrade
    until fake_package_manager.release is set.
    """
    agent = CobblerAgent(
        hostname="testhost",
        engine=PackageEngine(fake_package_manager),
        auth=ApiKeyAuth(TEST_API_KEY),
    )
    server = bind_server(make_handler(agent), port=0, host="127.0.0.1")
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    host, port = server.server_address[:2]
    yield f"http://{host}:{port}", agent

    fake_package_manager.release.set()
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)


# Skip markers for conditional test execution
def pytest_configure(config):
    """Add custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (live HTTP on localhost)"
    )
