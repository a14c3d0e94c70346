#!/usr/bin/env python3
"""
Cobbler Agent (cobblerd) - Package status and upgrades for a single node.

The agent runs on each node in the fleet and:
1. Advertises itself over mDNS as cobblerd-<hostname> (_cobbler._tcp.local.)
2. Serves an HTTP API for package status and full upgrades
3. Runs at most one full upgrade at a time

Usage:
    # Defaults: hunt for a free port from 8080, system hostname, generated key
    python3 -m cobbler.agent

    # Fixed port and key (fails if the port is taken)
    COBBLER_DAEMON_PORT=8080 COBBLER_DAEMON_API_KEY=secret python3 -m cobbler.agent

    # Advertise a specific address
    python3 -m cobbler.agent --hostname pi-kitchen.local --ip 192.168.1.20

API Endpoints:
    GET  /health                 - Liveness (no auth)
    GET  /status                 - Outdated packages + upgrade flag (X-API-Key)
    POST /packages/full-upgrade  - Start a full upgrade (X-API-Key)
"""

import argparse
import json
import logging
import signal
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

from cobbler.auth import ApiKeyAuth, resolve_api_key
from cobbler.config import AgentSettings, load_agent_settings
from cobbler.discovery import DiscoveryBackend, ZeroconfBackend, register_agent
from cobbler.errors import AuthError, ConflictError, PackageManagerError, PreconditionError
from cobbler.packages import AptPackageManager, PackageEngine, PackageManager
from cobbler.types import API_KEY_HEADER, DEFAULT_AGENT_PORT

logger = logging.getLogger("cobbler.agent")

MAX_PORT = 65535

Response = Tuple[int, Dict[str, Any]]


class CobblerAgent:
    """
    Request logic for one agent, independent of the HTTP plumbing.

    Each method returns (status_code, json_body). Auth is checked before the
    engine is touched.
    """

    def __init__(self, hostname: str, engine: PackageEngine, auth: ApiKeyAuth):
        self.hostname = hostname
        self.engine = engine
        self.auth = auth

    def health(self) -> Response:
        return 200, {"status": "ok", "hostname": self.hostname}

    def status(self, api_key: Optional[str]) -> Response:
        try:
            self.auth.check(api_key)
        except AuthError as e:
            return 401, {"message": e.message}

        try:
            result = self.engine.get_status()
        except PreconditionError as e:
            return 412, {"message": e.message, "updates": [], "is_upgrading": self.engine.is_upgrading}
        except PackageManagerError as e:
            logger.error(f"Failed to check for updates: {e}")
            return 500, {
                "message": f"Failed to check for updates: {e}",
                "updates": [],
                "is_upgrading": self.engine.is_upgrading,
            }

        return 200, result.to_dict()

    def full_upgrade(self, api_key: Optional[str]) -> Response:
        try:
            self.auth.check(api_key)
        except AuthError as e:
            return 401, {"message": e.message}

        try:
            self.engine.trigger_full_upgrade()
        except PreconditionError as e:
            return 412, {"message": e.message}
        except ConflictError as e:
            logger.info("Rejected full upgrade: one is already running")
            return 409, {"message": e.message}

        return 202, {"message": "full upgrade triggered"}


class AgentRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the agent API."""

    agent: CobblerAgent

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")

    def _send_json(self, data: Any, status: int = 200):
        body = json.dumps(data, indent=2).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _api_key(self) -> Optional[str]:
        return self.headers.get(API_KEY_HEADER)

    def do_GET(self):
        path = urlparse(self.path).path

        if path == "/health":
            status, body = self.agent.health()
            self._send_json(body, status)
        elif path == "/status":
            status, body = self.agent.status(self._api_key())
            self._send_json(body, status)
        elif path == "/packages/full-upgrade":
            self._send_json({"message": "method not allowed"}, 405)
        else:
            self._send_json({"message": "not found"}, 404)

    def do_POST(self):
        path = urlparse(self.path).path

        # Drain any body so keep-alive connections stay in sync
        content_length = int(self.headers.get("Content-Length", 0) or 0)
        if content_length > 0:
            self.rfile.read(content_length)

        if path == "/packages/full-upgrade":
            status, body = self.agent.full_upgrade(self._api_key())
            self._send_json(body, status)
        elif path in ("/status", "/health"):
            self._send_json({"message": "method not allowed"}, 405)
        else:
            self._send_json({"message": "not found"}, 404)


# =============================================================================
# SERVER
# =============================================================================

def make_handler(agent: CobblerAgent):
    """Handler class bound to one agent instance."""

    class Handler(AgentRequestHandler):
        pass
    Handler.agent = agent
    return Handler


def bind_server(handler, port: Optional[int] = None, host: str = "0.0.0.0") -> ThreadingHTTPServer:
    """
    Bind the HTTP server.

    With an explicit port, bind to it or raise OSError. Without one, start at
    the default port and move up until a free port is found.
    """
    if port is not None:
        try:
            return ThreadingHTTPServer((host, port), handler)
        except OSError as e:
            logger.error(f"failed to bind to port {port}: {e}")
            raise

    candidate = DEFAULT_AGENT_PORT
    while True:
        try:
            return ThreadingHTTPServer((host, candidate), handler)
        except OSError:
            if candidate >= MAX_PORT:
                logger.error("no free ports found")
                raise
            logger.warning(f"port {candidate} is already in use, trying {candidate + 1}...")
            candidate += 1


def build_agent(
    settings: AgentSettings,
    package_manager: Optional[PackageManager] = None,
) -> CobblerAgent:
    """Wire auth and the package engine for the given settings."""
    api_key = resolve_api_key(settings.api_key)
    engine = PackageEngine(package_manager or AptPackageManager())
    return CobblerAgent(settings.hostname, engine, ApiKeyAuth(api_key))


def run_agent(
    settings: AgentSettings,
    backend: Optional[DiscoveryBackend] = None,
    package_manager: Optional[PackageManager] = None,
):
    """Run the agent until SIGINT/SIGTERM."""
    agent = build_agent(settings, package_manager)
    server = bind_server(make_handler(agent), settings.port)
    port = server.server_address[1]

    registration = register_agent(backend or ZeroconfBackend(), settings.hostname, port, settings.ip)

    def handle_sigterm(signum, frame):
        # shutdown() blocks until serve_forever returns, so not from this thread
        threading.Thread(target=server.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, handle_sigterm)

    logger.info(f"cobbler daemon listening on {server.server_address[0]}:{port}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down agent")
    finally:
        server.server_close()
        if registration:
            registration.shutdown()


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings, warnings = load_agent_settings()

    parser = argparse.ArgumentParser(prog="cobblerd", description="Cobbler daemon")
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=settings.port,
        help="Port to listen on (env COBBLER_DAEMON_PORT). "
             f"If not set, search for a free port starting from {DEFAULT_AGENT_PORT}",
    )
    parser.add_argument(
        "--hostname",
        default=settings.hostname,
        help="Hostname for mDNS registration (env COBBLER_DAEMON_HOSTNAME, default: system hostname)",
    )
    parser.add_argument(
        "--ip",
        default=settings.ip,
        help="Explicit IP address to advertise over mDNS (env COBBLER_DAEMON_IP)",
    )
    parser.add_argument(
        "--api-key",
        default=settings.api_key,
        help="Pre-shared API key (env COBBLER_DAEMON_API_KEY, generated if absent)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    for warning in warnings:
        logger.warning(warning)

    settings = AgentSettings(
        hostname=args.hostname.rstrip("."),
        port=args.port,
        ip=args.ip,
        api_key=args.api_key,
    )

    try:
        run_agent(settings)
    except OSError as e:
        logger.error(f"agent failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
