"""
Tests for cobbler/client.py - AgentClient HTTP mapping.

Tests cover:
- Success path (status JSON, upgrade acknowledgement)
- Timeout/connection errors -> NetworkError
- 401/403 -> AuthError, 409 -> ConflictError, 412 -> PreconditionError
- Other HTTP errors -> AgentHttpError
- Invalid JSON / missing fields -> DecodeError
"""

import unittest
from unittest.mock import patch, Mock, MagicMock

import requests as real_requests

from cobbler.client import AgentClient
from cobbler.errors import (
    AgentHttpError,
    AuthError,
    ConflictError,
    DecodeError,
    NetworkError,
    PreconditionError,
)
from cobbler.types import OperationKind, Target, TargetOrigin


def _response(status_code=200, json_data=None, text=""):
    resp = Mock()
    resp.status_code = status_code
    if json_data is None:
        resp.json.side_effect = ValueError("No JSON")
    else:
        resp.json.return_value = json_data
    resp.text = text
    return resp


class TestAgentClient(unittest.TestCase):
    """Test AgentClient against a mocked requests.Session."""

    def setUp(self):
        self.target = Target(address="10.0.0.5:8080", origin=TargetOrigin.EXPLICIT, api_key="K")
        self.client = AgentClient(timeout=5.0)

    def _mock_session(self, mock_session_class, response=None, side_effect=None):
        mock_session = MagicMock()
        mock_session_class.return_value.__enter__.return_value = mock_session
        if side_effect is not None:
            mock_session.request.side_effect = side_effect
        else:
            mock_session.request.return_value = response
        return mock_session

    @patch('cobbler.client.requests.Session')
    def test_get_status_success(self, mock_session_class):
        session = self._mock_session(mock_session_class, _response(200, {
            "message": "System has 2 outdated packages",
            "updates": ["libc6", "vim"],
            "is_upgrading": False,
        }))

        status = self.client.get_status(self.target)

        self.assertEqual(status.updates, ["libc6", "vim"])
        self.assertFalse(status.is_upgrading)
        args, kwargs = session.request.call_args
        self.assertEqual(args, ("GET", "http://10.0.0.5:8080/status"))
        self.assertEqual(kwargs["headers"]["X-API-Key"], "K")
        self.assertEqual(kwargs["timeout"], 5.0)

    @patch('cobbler.client.requests.Session')
    def test_no_key_header_without_key(self, mock_session_class):
        session = self._mock_session(mock_session_class, _response(200, {"message": "full upgrade triggered"}))
        target = Target(address="10.0.0.6:8080", origin=TargetOrigin.CONFIGURED)

        self.client.full_upgrade(target)

        _, kwargs = session.request.call_args
        self.assertNotIn("X-API-Key", kwargs["headers"])

    @patch('cobbler.client.requests.Session')
    def test_full_upgrade_success(self, mock_session_class):
        session = self._mock_session(mock_session_class, _response(202, {"message": "full upgrade triggered"}))

        message = self.client.full_upgrade(self.target)

        self.assertEqual(message, "full upgrade triggered")
        args, _ = session.request.call_args
        self.assertEqual(args, ("POST", "http://10.0.0.5:8080/packages/full-upgrade"))

    @patch('cobbler.client.requests.Session')
    def test_timeout_is_network_error(self, mock_session_class):
        self._mock_session(mock_session_class, side_effect=real_requests.Timeout("read timed out"))

        with self.assertRaises(NetworkError) as ctx:
            self.client.get_status(self.target)
        self.assertEqual(ctx.exception.address, "10.0.0.5:8080")
        self.assertEqual(ctx.exception.kind, "network")

    @patch('cobbler.client.requests.Session')
    def test_connection_refused_is_network_error(self, mock_session_class):
        self._mock_session(mock_session_class, side_effect=real_requests.ConnectionError("Connection refused"))

        with self.assertRaises(NetworkError):
            self.client.full_upgrade(self.target)

    @patch('cobbler.client.requests.Session')
    def test_status_code_mapping(self, mock_session_class):
        cases = [
            (401, AuthError),
            (403, AuthError),
            (409, ConflictError),
            (412, PreconditionError),
        ]
        for status_code, error_cls in cases:
            with self.subTest(status=status_code):
                self._mock_session(mock_session_class, _response(status_code, {"message": "nope"}))
                with self.assertRaises(error_cls) as ctx:
                    self.client.full_upgrade(self.target)
                self.assertEqual(ctx.exception.message, "nope")

    @patch('cobbler.client.requests.Session')
    def test_server_error_is_http_error(self, mock_session_class):
        self._mock_session(mock_session_class, _response(500, None, text="Internal Server Error"))

        with self.assertRaises(AgentHttpError) as ctx:
            self.client.get_status(self.target)
        self.assertEqual(ctx.exception.status, 500)
        self.assertIn("Internal Server Error", ctx.exception.message)

    @patch('cobbler.client.requests.Session')
    def test_invalid_json_is_decode_error(self, mock_session_class):
        self._mock_session(mock_session_class, _response(200, None, text="<html>"))

        with self.assertRaises(DecodeError):
            self.client.get_status(self.target)

    @patch('cobbler.client.requests.Session')
    def test_missing_fields_is_decode_error(self, mock_session_class):
        self._mock_session(mock_session_class, _response(200, {"message": "hi"}))

        with self.assertRaises(DecodeError) as ctx:
            self.client.get_status(self.target)
        self.assertEqual(ctx.exception.address, "10.0.0.5:8080")

    @patch('cobbler.client.requests.Session')
    def test_upgrade_without_message_is_decode_error(self, mock_session_class):
        self._mock_session(mock_session_class, _response(202, {"ok": True}))

        with self.assertRaises(DecodeError):
            self.client.full_upgrade(self.target)

    def test_operation_lookup(self):
        self.assertEqual(self.client.operation(OperationKind.STATUS), self.client.get_status)
        self.assertEqual(self.client.operation(OperationKind.FULL_UPGRADE), self.client.full_upgrade)


if __name__ == "__main__":
    unittest.main()
