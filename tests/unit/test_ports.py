"""Unit tests for contended port preemption."""

import os
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import psutil

from hvtest.ports import DEFAULT_CONTENDED_PORT, contended_port, port_owners, preempt_port


def _conn(port: int, pid):
    return SimpleNamespace(laddr=SimpleNamespace(ip="127.0.0.1", port=port), pid=pid)


class TestPortOwners:
    """Finding processes bound to the port."""

    @patch("psutil.net_connections")
    def test_filters_by_port(self, mock_connections):
        """Only connections on the port count; the own process is ignored."""
        mock_connections.return_value = [
            _conn(5555, 100),
            _conn(5555, 100),
            _conn(5555, 200),
            _conn(8080, 300),
            _conn(5555, None),
            _conn(5555, os.getpid()),
        ]
        assert port_owners(5555) == [100, 200]

    @patch("psutil.net_connections", side_effect=psutil.AccessDenied())
    def test_access_denied_returns_empty(self, _mock_connections):
        """Without permission to list sockets nothing is preempted."""
        assert port_owners(5555) == []


class TestPreemptPort:
    """Killing port owners."""

    @patch("hvtest.ports.time.sleep")
    @patch("hvtest.ports.port_owners", return_value=[100, 200])
    @patch("psutil.Process")
    def test_kills_owners_and_waits(self, mock_process, _mock_owners, mock_sleep):
        """Every owner is killed and the socket gets time to be released."""
        proc = MagicMock()
        proc.name.return_value = "qemu-system-aarch64"
        mock_process.return_value = proc

        assert preempt_port(5555) == 2
        assert proc.kill.call_count == 2
        mock_sleep.assert_called_once()

    @patch("hvtest.ports.time.sleep")
    @patch("hvtest.ports.port_owners", return_value=[])
    def test_free_port_does_not_wait(self, _mock_owners, mock_sleep):
        """A free port is a no-op."""
        assert preempt_port(5555) == 0
        mock_sleep.assert_not_called()

    @patch("hvtest.ports.time.sleep")
    @patch("hvtest.ports.port_owners", return_value=[100])
    @patch("psutil.Process", side_effect=psutil.NoSuchProcess(100))
    def test_vanished_owner(self, _mock_process, _mock_owners, mock_sleep):
        """Owners that exit on their own are not counted."""
        assert preempt_port(5555) == 0
        mock_sleep.assert_not_called()


class TestContendedPort:
    """Port configuration."""

    def test_default(self, monkeypatch):
        monkeypatch.delenv("HVTEST_CONTENDED_PORT", raising=False)
        assert contended_port() == DEFAULT_CONTENDED_PORT == 5555

    def test_override(self, monkeypatch):
        monkeypatch.setenv("HVTEST_CONTENDED_PORT", "6000")
        assert contended_port() == 6000

    def test_invalid_override_falls_back(self, monkeypatch):
        monkeypatch.setenv("HVTEST_CONTENDED_PORT", "not-a-port")
        assert contended_port() == 5555
