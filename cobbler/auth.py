"""
Authentication for the agent API.

Every privileged endpoint (/status, /packages/full-upgrade) requires the
X-API-Key header. The agent holds exactly one key for its lifetime: the one
the operator supplied (COBBLER_DAEMON_API_KEY / --api-key), or a random key
generated at startup and logged once so the operator can copy it.
"""

import logging
import secrets
import uuid
from typing import Optional

from cobbler.errors import AuthError

logger = logging.getLogger("cobbler.auth")


def resolve_api_key(configured: Optional[str]) -> str:
    """Return the operator's key, or generate one and log it."""
    if configured:
        return configured

    generated = uuid.uuid4().hex
    logger.warning(f"No API key configured. Generated API key: {generated}")
    logger.warning("Set COBBLER_DAEMON_API_KEY to keep a stable key across restarts.")
    return generated


class ApiKeyAuth:
    """Validates the pre-shared key presented on each request."""

    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("api_key must not be empty")
        self._key = api_key.encode()

    def check(self, presented: Optional[str]):
        """
        Raise AuthError unless `presented` matches the agent key.

        The comparison takes the same time wherever the keys differ.
        Error messages never include either key.
        """
        if not presented:
            raise AuthError("missing API key, provide the X-API-Key header")

        if not secrets.compare_digest(presented.encode(), self._key):
            raise AuthError("invalid API key")
