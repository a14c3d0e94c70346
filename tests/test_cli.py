"""
Tests for the cobbler CLI - argument parsing, output and exit codes.

Agents and mDNS are mocked; no network traffic.
"""

from unittest.mock import patch

import pytest

from cobbler.__main__ import build_parser, main
from cobbler.cli import format_table
from cobbler.config import load_nodes
from cobbler.errors import NetworkError
from cobbler.types import StatusResult

from conftest import make_entry


@pytest.fixture
def in_temp_dir(temp_dir, monkeypatch):
    monkeypatch.chdir(temp_dir)
    monkeypatch.delenv("COBBLER_CONFIG", raising=False)
    monkeypatch.delenv("COBBLER_TIMEOUT", raising=False)
    return temp_dir


def _fake_status(target):
    if target.address == "10.0.0.6:8080":
        raise NetworkError("connection failed: refused", target.address)
    return StatusResult.for_updates(["libc6", "vim"], is_upgrading=False)


def test_format_table():
    table = format_table(["A", "BB"], [["xxx", "y"], ["z", "wwww"]])
    assert table.splitlines() == [
        "A    BB",
        "xxx  y",
        "z    wwww",
    ]


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage: cobbler" in capsys.readouterr().out


def test_packages_requires_full_upgrade():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["packages", "10.0.0.5:8080"])


def test_discover_timeout_does_not_clobber_global():
    args = build_parser().parse_args(["--timeout", "30s", "discover", "--timeout", "2"])
    assert args.timeout == "30s"
    assert args.discovery_timeout == "2"


class TestHelp:

    def test_general(self, capsys):
        assert main(["help"]) == 0
        assert "discover" in capsys.readouterr().out

    def test_command(self, capsys):
        assert main(["help", "status"]) == 0
        assert "--all" in capsys.readouterr().out

    def test_unknown(self, capsys):
        assert main(["help", "frobnicate"]) == 1
        assert "Unknown command: frobnicate" in capsys.readouterr().out


class TestDiscover:

    @patch("cobbler.cli.discover_or_empty")
    def test_prints_table(self, mock_discover, in_temp_dir, capsys):
        mock_discover.return_value = [make_entry("kitchen", "192.168.1.10")]

        assert main(["discover", "--timeout", "1"]) == 0

        out = capsys.readouterr().out
        assert "Discovery will take 1 seconds" in out
        assert "INSTANCE" in out
        assert "cobblerd-kitchen" in out
        assert mock_discover.call_args[0][1] == 1.0

    @patch("cobbler.cli.discover_or_empty", return_value=[])
    def test_nothing_found(self, mock_discover, in_temp_dir, capsys):
        assert main(["discover"]) == 0
        out = capsys.readouterr().out
        assert "Discovery will take 5 seconds" in out
        assert "No cobbler daemons found." in out

    @patch("cobbler.cli.discover_or_empty")
    def test_update_config(self, mock_discover, in_temp_dir, config_file, capsys):
        mock_discover.return_value = [
            make_entry("kitchen", "10.0.0.5"),
            make_entry("garage", "10.0.0.9"),
        ]

        assert main(["--config", str(config_file), "discover", "-u"]) == 0

        assert f"Configuration updated: {config_file}" in capsys.readouterr().out
        nodes = load_nodes(config_file)
        assert [n.address for n in nodes] == ["10.0.0.5:8080", "10.0.0.6:8080", "10.0.0.9:8080"]
        assert nodes[0].api_key == "K"
        assert nodes[2].name == "garage"

    @patch("cobbler.cli.discover_or_empty")
    def test_update_config_nothing_new(self, mock_discover, in_temp_dir, config_file, capsys):
        mock_discover.return_value = [make_entry("kitchen", "10.0.0.5")]

        assert main(["--config", str(config_file), "discover", "-u"]) == 0
        assert "No new daemons found to add to configuration." in capsys.readouterr().out

    @patch("cobbler.cli.discover_or_empty")
    def test_update_config_with_unparseable_saved_row(self, mock_discover, in_temp_dir, capsys):
        path = in_temp_dir / "nodes.yaml"
        path.write_text("nodes:\n  - address: bad:port\n")
        mock_discover.return_value = [make_entry("kitchen", "10.0.0.5")]

        assert main(["--config", str(path), "discover", "-u"]) == 0

        assert f"Configuration updated: {path}" in capsys.readouterr().out
        assert [n.address for n in load_nodes(path)] == ["bad:port", "10.0.0.5:8080"]


class TestStatus:

    @patch("cobbler.cli.AgentClient.get_status", autospec=True)
    def test_partial_failure_exits_nonzero(self, mock_get_status, in_temp_dir, config_file, capsys):
        mock_get_status.side_effect = lambda self, target: _fake_status(target)

        code = main(["--config", str(config_file), "status"])

        out = capsys.readouterr().out
        assert code == 1
        assert "TARGET" in out
        assert "pi-kitchen (10.0.0.5:8080)" in out
        assert "System has 2 outdated packages" in out
        assert "error (network)" in out
        assert "  libc6" in out

    @patch("cobbler.cli.AgentClient.get_status", autospec=True)
    def test_explicit_target_uses_configured_key(self, mock_get_status, in_temp_dir, config_file):
        mock_get_status.side_effect = lambda self, target: _fake_status(target)

        assert main(["--config", str(config_file), "status", "10.0.0.5:8080"]) == 0

        target = mock_get_status.call_args[0][1]
        assert target.api_key == "K"

    def test_no_config_no_targets(self, in_temp_dir, capsys):
        assert main(["status"]) == 1
        out = capsys.readouterr().out
        assert "No config file was found or set." in out
        assert "No targets found." in out

    @patch("cobbler.cli.AgentClient.get_status", autospec=True)
    def test_explicit_target_without_config_has_no_config_notice(self, mock_get_status, in_temp_dir, capsys):
        mock_get_status.side_effect = lambda self, target: _fake_status(target)

        assert main(["status", "10.0.0.5:8080"]) == 0
        assert "No config file was found or set." not in capsys.readouterr().out

    def test_bad_config(self, in_temp_dir, capsys):
        bad = in_temp_dir / "bad.yaml"
        bad.write_text("nodes: [\n")
        assert main(["--config", str(bad), "status"]) == 1
        assert "error: failed to load config" in capsys.readouterr().out

    def test_invalid_timeout(self, in_temp_dir, capsys):
        assert main(["--timeout", "soon", "status", "10.0.0.5:8080"]) == 1
        assert "invalid timeout" in capsys.readouterr().out

    def test_invalid_target(self, in_temp_dir, capsys):
        assert main(["status", "bad:port"]) == 1
        assert "error:" in capsys.readouterr().out

    @patch("cobbler.cli.AgentClient.get_status", autospec=True)
    @patch("cobbler.cli.discover_or_empty")
    def test_all_uses_discovery(self, mock_discover, mock_get_status, in_temp_dir, capsys):
        mock_discover.return_value = [make_entry("kitchen", "10.0.0.5")]
        mock_get_status.side_effect = lambda self, target: _fake_status(target)

        assert main(["status", "--all"]) == 0
        assert "kitchen (10.0.0.5:8080)" in capsys.readouterr().out


class TestPackages:

    @patch("cobbler.cli.AgentClient.full_upgrade", autospec=True)
    def test_full_upgrade(self, mock_upgrade, in_temp_dir, config_file, capsys):
        mock_upgrade.return_value = "full upgrade triggered"

        assert main(["--config", str(config_file), "packages", "--full-upgrade"]) == 0

        out = capsys.readouterr().out
        assert out.count("full upgrade triggered") == 2
        assert mock_upgrade.call_count == 2

    @patch("cobbler.cli.AgentClient.full_upgrade", autospec=True)
    @patch("cobbler.cli.discover_or_empty")
    def test_full_upgrade_all_uses_discovery(self, mock_discover, mock_upgrade, in_temp_dir, capsys):
        mock_discover.return_value = [make_entry("kitchen", "10.0.0.5"), make_entry("garage", "10.0.0.9")]
        mock_upgrade.return_value = "full upgrade triggered"

        assert main(["packages", "--full-upgrade", "--all"]) == 0

        upgraded = [c[0][1].address for c in mock_upgrade.call_args_list]
        assert sorted(upgraded) == ["10.0.0.5:8080", "10.0.0.9:8080"]
