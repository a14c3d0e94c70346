"""
Cobbler Types - Shared data structures for the agent and the tool.

These types are used by both the agent (cobblerd) and the operator tool
(cobbler) for discovery, target resolution and status reporting.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

from cobbler.errors import AgentError, DecodeError

# Wire protocol constants (must match on both sides)
SERVICE_TYPE = "_cobbler._tcp"
SERVICE_DOMAIN = "local."
INSTANCE_PREFIX = "cobblerd-"
API_KEY_HEADER = "X-API-Key"
DEFAULT_AGENT_PORT = 8080

T = TypeVar("T")


class TargetOrigin(str, Enum):
    """Where a resolved target came from. Earlier members take precedence."""
    EXPLICIT = "explicit"       # Named on the command line
    CONFIGURED = "configured"   # From the persisted node list
    DISCOVERED = "discovered"   # From an mDNS browse


class OperationKind(str, Enum):
    """Operations the tool can fan out to agents."""
    STATUS = "status"
    FULL_UPGRADE = "full-upgrade"


@dataclass(frozen=True)
class ServiceEntry:
    """A cobbler agent seen during an mDNS browse."""
    instance_name: str
    hostname: str
    addresses: Tuple[str, ...]
    port: int
    id: str = ""

    @property
    def fullname(self) -> str:
        return f"{self.instance_name}.{SERVICE_TYPE}.{SERVICE_DOMAIN}"

    @property
    def first_address(self) -> Optional[str]:
        return self.addresses[0] if self.addresses else None


@dataclass
class PersistedNode:
    """A row of the operator's saved node list."""
    address: str
    name: Optional[str] = None
    api_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        # Optional fields are left out of the file when unset
        data: Dict[str, Any] = {}
        if self.name is not None:
            data["name"] = self.name
        data["address"] = self.address
        if self.api_key is not None:
            data["api_key"] = self.api_key
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedNode":
        name = data.get("name")
        api_key = data.get("api_key")
        return cls(
            address=str(data["address"]),
            name=str(name) if name is not None else None,
            api_key=str(api_key) if api_key is not None else None,
        )


@dataclass(frozen=True)
class Target:
    """A resolved operation destination."""
    address: str  # Normalized host:port, IPv6 host bracketed
    origin: TargetOrigin
    display_name: Optional[str] = None
    api_key: Optional[str] = None

    @property
    def url(self) -> str:
        return f"http://{self.address}"


@dataclass
class StatusResult:
    """Package status reported by an agent."""
    message: str
    updates: List[str] = field(default_factory=list)
    is_upgrading: bool = False

    @property
    def update_count(self) -> int:
        return len(self.updates)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "updates": list(self.updates),
            "is_upgrading": self.is_upgrading,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "StatusResult":
        """Parse an agent response body, raising DecodeError on a bad shape."""
        if not isinstance(data, dict):
            raise DecodeError(f"expected a JSON object, got {type(data).__name__}")
        try:
            message = data["message"]
            updates = data["updates"]
            is_upgrading = data["is_upgrading"]
        except KeyError as e:
            raise DecodeError(f"missing field {e.args[0]!r} in status response")
        if not isinstance(message, str) or not isinstance(updates, list) or not isinstance(is_upgrading, bool):
            raise DecodeError("status response has fields of the wrong type")
        return cls(message=message, updates=[str(u) for u in updates], is_upgrading=is_upgrading)

    @classmethod
    def for_updates(cls, updates: List[str], is_upgrading: bool) -> "StatusResult":
        """Build a status with the standard summary message."""
        count = len(updates)
        if count == 0:
            message = "System is up to date"
        else:
            message = f"System has {count} outdated packages"
        return cls(message=message, updates=list(updates), is_upgrading=is_upgrading)


@dataclass
class OperationOutcome(Generic[T]):
    """Result of one fan-out operation against one target."""
    target: Target
    value: Optional[T] = None
    error: Optional[AgentError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FanOutResult(Generic[T]):
    """Per-target outcomes in input target order."""
    outcomes: List[OperationOutcome[T]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.outcomes)

    def __iter__(self):
        return iter(self.outcomes)

    @property
    def had_failures(self) -> bool:
        return any(not o.ok for o in self.outcomes)

    @property
    def succeeded(self) -> List[OperationOutcome[T]]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[OperationOutcome[T]]:
        return [o for o in self.outcomes if not o.ok]
