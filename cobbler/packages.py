"""
Package status and upgrade engine for the agent.

The engine answers two questions for the HTTP layer:
1. What is outdated right now? (re-queried on every call, never cached)
2. Start a full upgrade, unless one is already running.

Upgrades are single-flight. UpgradeGuard.try_start() flips Idle -> Upgrading
atomically; a second trigger while Upgrading is rejected with ConflictError
and spawns nothing. The upgrade runs on its own thread and the guard returns
to Idle when that thread finishes, whatever apt's exit status. There is no
way to cancel an upgrade once started; poll /status to see it finish.

The package manager itself is behind the PackageManager interface.
AptPackageManager shells out to apt-get/apt and trusts their exit codes.
"""

import logging
import os
import shutil
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from cobbler.errors import ConflictError, PackageManagerError, PreconditionError
from cobbler.types import StatusResult

logger = logging.getLogger("cobbler.packages")

NOT_DEBIAN_MESSAGE = "the system is not a Debian-based Linux system"
UPGRADE_RUNNING_MESSAGE = "a full upgrade is currently running"

# apt-get update can be slow on a Pi with a poor link
UPDATE_TIMEOUT_SECONDS = 600
LIST_TIMEOUT_SECONDS = 120


# =============================================================================
# PACKAGE MANAGER
# =============================================================================

class PackageManager(ABC):
    """The system package manager, as seen by the engine."""

    @abstractmethod
    def is_supported(self) -> bool:
        """True if this system can be managed (Debian-based Linux)."""

    @abstractmethod
    def refresh_index(self):
        """Update the package index."""

    @abstractmethod
    def list_upgradable(self) -> List[str]:
        """Names of packages with a newer candidate version."""

    @abstractmethod
    def full_upgrade(self):
        """Run a full upgrade. Raises PackageManagerError on failure."""


def parse_upgradable(output: str) -> List[str]:
    """
    Package names from `apt list --upgradable` output.

    Lines look like:
        vim/stable-security 2:9.0.1378-2+deb12u1 arm64 [upgradable from: 2:9.0.1378-2]
    """
    names = []
    for line in output.splitlines():
        line = line.strip()
        if not line or "/" not in line or line.startswith(("Listing", "WARNING", "N:")):
            continue
        names.append(line.split("/", 1)[0])
    return names


class AptPackageManager(PackageManager):
    """PackageManager backed by apt-get and apt."""

    def __init__(self):
        self._env = dict(os.environ, LC_ALL="C", DEBIAN_FRONTEND="noninteractive")

    def is_supported(self) -> bool:
        if not sys.platform.startswith("linux"):
            return False
        return Path("/etc/debian_version").exists() or shutil.which("apt-get") is not None

    def _run(self, args: List[str], timeout: Optional[float]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                args,
                capture_output=True,
                text=True,
                env=self._env,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise PackageManagerError(f"{args[0]} not found") from e
        except subprocess.TimeoutExpired as e:
            raise PackageManagerError(f"{' '.join(args)} timed out after {timeout}s") from e

    def refresh_index(self):
        logger.info("updating apt cache...")
        result = self._run(["apt-get", "update"], UPDATE_TIMEOUT_SECONDS)
        if result.returncode != 0:
            # A stale index still gives a useful answer
            logger.warning(f"apt-get update exited with {result.returncode}: {result.stderr.strip()[-500:]}")

    def list_upgradable(self) -> List[str]:
        logger.info("determining available updates...")
        result = self._run(["apt", "list", "--upgradable"], LIST_TIMEOUT_SECONDS)
        if result.returncode != 0:
            raise PackageManagerError(
                f"apt list exited with {result.returncode}: {result.stderr.strip()[-500:]}"
            )
        updates = parse_upgradable(result.stdout)
        logger.info(f"found {len(updates)} available updates")
        return updates

    def full_upgrade(self):
        result = self._run(["apt-get", "full-upgrade", "-y"], None)
        if result.returncode != 0:
            raise PackageManagerError(
                f"full upgrade failed with status {result.returncode}. "
                f"stderr: {result.stderr.strip()[-2000:]}"
            )


# =============================================================================
# UPGRADE GUARD
# =============================================================================

class UpgradeGuard:
    """
    Process-wide single-flight flag for full upgrades.

    try_start() is a compare-and-swap; there is no separate "check" step a
    caller could race against. Reads never wait on a running upgrade.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._upgrading = False

    def try_start(self) -> bool:
        """Idle -> Upgrading. False if an upgrade is already running."""
        with self._lock:
            if self._upgrading:
                return False
            self._upgrading = True
            return True

    def finish(self):
        """Upgrading -> Idle, unconditionally."""
        with self._lock:
            self._upgrading = False

    @property
    def is_upgrading(self) -> bool:
        return self._upgrading


# =============================================================================
# ENGINE
# =============================================================================

class PackageEngine:
    """Status queries and single-flight full upgrades for one agent."""

    def __init__(self, package_manager: PackageManager, guard: Optional[UpgradeGuard] = None):
        self.package_manager = package_manager
        self.guard = guard or UpgradeGuard()

    @property
    def is_upgrading(self) -> bool:
        return self.guard.is_upgrading

    def get_status(self) -> StatusResult:
        """
        Re-query the package index and report outdated packages.

        Raises:
            PreconditionError: Not a Debian-based system
            PackageManagerError: apt could not be queried
        """
        if not self.package_manager.is_supported():
            raise PreconditionError(NOT_DEBIAN_MESSAGE)

        self.package_manager.refresh_index()
        updates = self.package_manager.list_upgradable()
        return StatusResult.for_updates(updates, is_upgrading=self.guard.is_upgrading)

    def trigger_full_upgrade(self):
        """
        Start a full upgrade in the background and return immediately.

        Raises:
            PreconditionError: Not a Debian-based system
            ConflictError: An upgrade is already running (nothing is started)
        """
        if not self.package_manager.is_supported():
            raise PreconditionError(NOT_DEBIAN_MESSAGE)

        if not self.guard.try_start():
            raise ConflictError(UPGRADE_RUNNING_MESSAGE)

        # Non-daemon: interpreter exit waits for apt rather than killing it
        worker = threading.Thread(target=self._run_full_upgrade, name="full-upgrade", daemon=False)
        try:
            worker.start()
        except RuntimeError:
            self.guard.finish()
            raise

    def _run_full_upgrade(self):
        logger.info("starting full upgrade")
        try:
            self.package_manager.full_upgrade()
            logger.info("full upgrade completed successfully")
        except PackageManagerError as e:
            logger.error(str(e))
        except Exception:
            logger.exception("failed to execute full upgrade")
        finally:
            self.guard.finish()
