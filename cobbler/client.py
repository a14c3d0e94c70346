"""
Agent Client - HTTP calls from the tool to one cobbler agent.

Each call maps the HTTP result onto the cobbler error taxonomy so the
fan-out can record one classified outcome per target:

    connect refused / timeout  -> NetworkError
    401, 403                   -> AuthError
    409                        -> ConflictError
    412                        -> PreconditionError
    other 4xx / 5xx            -> AgentHttpError
    bad JSON / missing fields  -> DecodeError

Exceptions never leak raw requests errors.

Usage:
    client = AgentClient(timeout=60)
    status = client.get_status(target)
    message = client.full_upgrade(target)

There are no retries. The timeout is the only bound on a call, and each call
uses its own session so concurrent targets share nothing.
"""

import logging
from typing import Any, Dict

import requests

from cobbler.errors import (
    AgentHttpError,
    AuthError,
    ConflictError,
    DecodeError,
    NetworkError,
    PreconditionError,
)
from cobbler.types import API_KEY_HEADER, OperationKind, StatusResult, Target

logger = logging.getLogger("cobbler.client")

STATUS_PATH = "/status"
FULL_UPGRADE_PATH = "/packages/full-upgrade"

_STATUS_ERRORS = {
    401: AuthError,
    403: AuthError,
    409: ConflictError,
    412: PreconditionError,
}


def _error_message(resp: requests.Response) -> str:
    """Best human-readable message from an error response."""
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        return data["message"]
    text = resp.text.strip()
    return text[:200] if text else f"HTTP {resp.status_code}"


class AgentClient:
    """HTTP client for the agent API."""

    def __init__(self, timeout: float = 60.0):
        self.timeout = timeout

    def _headers(self, target: Target) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if target.api_key:
            headers[API_KEY_HEADER] = target.api_key
        return headers

    def _request_json(self, method: str, target: Target, path: str) -> Any:
        url = target.url + path
        logger.debug(f"{method} {url}")

        try:
            with requests.Session() as session:
                resp = session.request(
                    method,
                    url,
                    headers=self._headers(target),
                    timeout=self.timeout,
                )
        except requests.Timeout as e:
            raise NetworkError(f"timed out after {self.timeout:g}s", target.address, e)
        except requests.ConnectionError as e:
            raise NetworkError(f"connection failed: {e}", target.address, e)
        except requests.RequestException as e:
            raise NetworkError(f"request failed: {e}", target.address, e)

        if resp.status_code >= 400:
            message = _error_message(resp)
            error_cls = _STATUS_ERRORS.get(resp.status_code)
            if error_cls:
                raise error_cls(message, target.address)
            raise AgentHttpError(resp.status_code, message, target.address)

        try:
            return resp.json()
        except ValueError as e:
            raise DecodeError(f"invalid JSON from {url}: {e}", target.address)

    def get_status(self, target: Target) -> StatusResult:
        """GET /status on one agent."""
        data = self._request_json("GET", target, STATUS_PATH)
        try:
            return StatusResult.from_dict(data)
        except DecodeError as e:
            e.address = target.address
            raise

    def full_upgrade(self, target: Target) -> str:
        """POST /packages/full-upgrade on one agent. Returns the agent's message."""
        data = self._request_json("POST", target, FULL_UPGRADE_PATH)
        if not isinstance(data, dict) or not isinstance(data.get("message"), str):
            raise DecodeError("upgrade response has no message", target.address)
        return data["message"]

    def operation(self, kind: OperationKind):
        """The per-target callable for an operation kind."""
        if kind == OperationKind.STATUS:
            return self.get_status
        if kind == OperationKind.FULL_UPGRADE:
            return self.full_upgrade
        raise ValueError(f"unknown operation: {kind}")
