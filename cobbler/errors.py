"""
Cobbler Errors - Exception hierarchy shared by the agent and the tool.

The agent raises these from the engine and auth layers and maps them to HTTP
status codes. The tool's AgentClient maps HTTP results back onto the same
classes, so a fan-out outcome carries one classified error per target.

    CobblerError
    ├── ConfigError          node list unreadable or malformed
    ├── DiscoveryError       mDNS setup failure (degrades to no results)
    ├── PackageManagerError  apt invocation failed (agent side)
    └── AgentError           per-target operation failure
        ├── NetworkError       connect refused, timeout, deadline expired
        ├── AuthError          401 / 403
        ├── ConflictError      409 - upgrade already running
        ├── PreconditionError  412 - not a Debian-based system
        ├── DecodeError        malformed response body
        └── AgentHttpError     any other HTTP error status
"""

from typing import Optional


class CobblerError(Exception):
    """Base error for anything cobbler raises."""
    pass


class ConfigError(CobblerError):
    """Node list could not be read or has the wrong shape."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


class DiscoveryError(CobblerError):
    """mDNS resolver or browse could not be set up."""
    pass


class PackageManagerError(CobblerError):
    """The package manager failed or could not be executed."""
    pass


# =============================================================================
# PER-TARGET ERRORS
# =============================================================================

class AgentError(CobblerError):
    """An operation against a single agent failed."""

    kind = "error"
    status: Optional[int] = None

    def __init__(self, message: str, address: Optional[str] = None):
        self.message = message
        self.address = address
        super().__init__(message)


class NetworkError(AgentError):
    """Agent not reachable - connection error or deadline expired."""

    kind = "network"

    def __init__(self, message: str, address: Optional[str] = None, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message, address)


class AuthError(AgentError):
    """Missing or invalid API key."""

    kind = "auth"
    status = 401


class ConflictError(AgentError):
    """A full upgrade is already running on the agent."""

    kind = "conflict"
    status = 409


class PreconditionError(AgentError):
    """The agent's system is not Debian-based."""

    kind = "precondition"
    status = 412


class DecodeError(AgentError):
    """Response wasn't valid JSON or missed expected fields."""

    kind = "decode"


class AgentHttpError(AgentError):
    """HTTP error status without a more specific class."""

    kind = "http"

    def __init__(self, status: int, message: str, address: Optional[str] = None):
        super().__init__(message, address)
        self.status = status
