"""
Cobbler - Package status and upgrades across a fleet of Debian nodes.

The Cobbler system has two halves:
- Agents (cobblerd) run on each node, advertise over mDNS and serve an HTTP API
- The tool (cobbler) finds agents, fans requests out to them and reports back

Components:
    - agent.py: Agent HTTP server (runs on each node)
    - packages.py: apt status queries and single-flight full upgrades
    - discovery.py: mDNS registration and browsing
    - resolver.py: Turns CLI arguments and the node list into targets
    - fanout.py: Concurrent, deadline-bounded calls to many agents
    - client.py: HTTP client for one agent
    - types.py: Shared data types

Usage:
    # Start an agent on a node
    python3 -m cobbler.agent --api-key secret

    # Query every configured node
    python3 -m cobbler status
"""

from cobbler.types import FanOutResult, OperationOutcome, PersistedNode, ServiceEntry, StatusResult, Target

__all__ = ["FanOutResult", "OperationOutcome", "PersistedNode", "ServiceEntry", "StatusResult", "Target"]

__version__ = "0.1.0"
