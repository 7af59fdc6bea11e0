import os
import subprocess
import sys
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock
from unittest.mock import Mock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from lib.errors import CommandError
from lib.models import Color, SlotHealth, SwitchConfig
from lib.runtime import DockerRuntime, LocalHost, health_from_state, parse_started_at


def completed(stdout: str = "", returncode: int = 0) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess([], returncode, stdout=stdout, stderr="")


class TestParsing(unittest.TestCase):

    def test_started_at_nanoseconds(self) -> None:
        self.assertEqual(
            parse_started_at("2026-10-18T09:15:02.123456789Z"),
            datetime(2026, 10, 18, 9, 15, 2, 123456, tzinfo=timezone.utc),
        )

    def test_started_at_zero_time(self) -> None:
        self.assertIsNone(parse_started_at("0001-01-01T00:00:00Z"))
        self.assertIsNone(parse_started_at(""))

    def test_health_from_state(self) -> None:
        self.assertEqual(health_from_state({"Running": True, "Health": {"Status": "healthy"}}), SlotHealth.healthy)
        self.assertEqual(health_from_state({"Running": True, "Health": {"Status": "unhealthy"}}), SlotHealth.unhealthy)
        self.assertEqual(health_from_state({"Running": True, "Health": {"Status": "starting"}}), SlotHealth.unknown)
        self.assertEqual(health_from_state({"Running": True}), SlotHealth.running)
        self.assertEqual(health_from_state({"Running": False}), SlotHealth.unknown)


class TestDockerRuntime(unittest.TestCase):

    def setUp(self):
        self.config = SwitchConfig(domain="app.example.com", repo_dir=Path("/srv/app"), compose_project="app")
        self.runtime = DockerRuntime(self.config)

    def test_compose_cmd(self) -> None:
        self.assertEqual(
            self.runtime.compose_cmd("ps"),
            [
                "docker", "compose", "--project-directory", "/srv/app",
                "-f", "/srv/app/docker-compose.yml", "--project-name", "app", "ps",
            ],
        )

    @mock.patch("lib.runtime.run_command")
    def test_compose_up_only_touches_one_service(self, mock_run: Mock) -> None:
        self.runtime.compose_up("app-green")

        args, kwargs = mock_run.call_args
        self.assertEqual(args[0][-5:], ["up", "-d", "--build", "--no-deps", "app-green"])
        self.assertEqual(kwargs["timeout"], self.config.build_timeout)

    @mock.patch("lib.runtime.run_command")
    def test_slot_state(self, mock_run: Mock) -> None:
        mock_run.side_effect = [
            completed("abc123\n"),
            completed('{"Running": true, "StartedAt": "2026-10-18T09:15:02Z", "Health": {"Status": "healthy"}}'),
        ]

        state = self.runtime.slot_state(self.config.slot(Color.green))

        self.assertEqual(state.container, "abc123")
        self.assertEqual(state.health, SlotHealth.healthy)
        self.assertTrue(state.running)
        self.assertTrue(state.serving)

    @mock.patch("lib.runtime.command_ok", return_value=False)
    @mock.patch("lib.runtime.run_command")
    def test_slot_state_absent(self, mock_run: Mock, _: Mock) -> None:
        mock_run.return_value = completed("")

        state = self.runtime.slot_state(self.config.slot(Color.blue))

        self.assertEqual(state.health, SlotHealth.absent)
        self.assertIsNone(state.container)

    @mock.patch("lib.runtime.run_command")
    def test_running_containers(self, mock_run: Mock) -> None:
        mock_run.return_value = completed("edge\tcaddy:2\t0.0.0.0:443->443/tcp\nbroken line\n")

        self.assertEqual(self.runtime.running_containers(), [("edge", "caddy:2", "0.0.0.0:443->443/tcp")])

    @mock.patch("lib.runtime.run_command")
    def test_networks(self, mock_run: Mock) -> None:
        mock_run.return_value = completed("app_default\nedge\n\n")

        self.assertEqual(self.runtime.networks("app-green"), ["app_default", "edge"])


class TestLocalHost(unittest.TestCase):

    @mock.patch("lib.runtime.run_command")
    def test_port_listeners(self, mock_run: Mock) -> None:
        mock_run.return_value = completed(
            "State Recv-Q Send-Q Local Address:Port\n"
            'LISTEN 0 4096 0.0.0.0:443 0.0.0.0:* users:(("docker-proxy",pid=1,fd=4))\n'
            'LISTEN 0 4096 0.0.0.0:4433 0.0.0.0:* users:(("other",pid=2,fd=4))\n'
        )

        lines = LocalHost().port_listeners(443)

        self.assertEqual(len(lines), 1)
        self.assertIn("docker-proxy", lines[0])

    @mock.patch("lib.runtime.run_command", side_effect=CommandError("Command not found: systemctl"))
    def test_unit_state_without_systemd(self, _: Mock) -> None:
        self.assertEqual(LocalHost().unit_state("caddy"), "inactive")


if __name__ == "__main__":
    unittest.main()
