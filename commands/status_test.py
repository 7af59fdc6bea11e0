#!/usr/bin/env python3

import os
import sys
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from click.testing import CliRunner

from commands.status import status
from lib.errors import EdgeDetectionError
from lib.models import (
    Color,
    EdgeMode,
    EdgeOwner,
    EdgeRuntime,
    ProbeResult,
    SlotHealth,
    SlotSelection,
    SlotState,
    SwitchConfig,
)


@patch("commands.status.load_settings")
@patch("commands.status.build_coordinator")
class TestStatus(unittest.TestCase):
    """Tests for status command"""

    def setUp(self):
        """Set up test fixtures"""
        self.runner = CliRunner()

    def test_status(self, mock_build: Mock, mock_settings: Mock) -> None:
        """Test the overview lists edge, slots and the public probe."""
        mock_settings.return_value = SwitchConfig(domain="app.example.com")
        mock_build.return_value.status.return_value = {
            "edge": EdgeRuntime(
                owner=EdgeOwner.docker,
                mode=EdgeMode.container_mounted,
                container="edge-caddy",
                target_file=Path("/srv/edge/Caddyfile"),
            ),
            "selection": SlotSelection(active=Color.green, source="probe"),
            "states": [
                SlotState(color=Color.blue, health=SlotHealth.absent),
                SlotState(color=Color.green, container="app-green", health=SlotHealth.healthy, running=True),
            ],
            "public": ProbeResult(url="https://app.example.com", status_code=200, slot="green"),
        }

        result = self.runner.invoke(status, [])

        self.assertEqual(result.exit_code, 0)
        self.assertIn("Mode   : container-mounted", result.output)
        self.assertIn("Config : /srv/edge/Caddyfile", result.output)
        self.assertIn("healthy (active)", result.output)
        self.assertIn("Active: green [probe]", result.output)
        self.assertIn("Public: HTTP 200, slot header: green", result.output)

    def test_status_no_edge(self, mock_build: Mock, mock_settings: Mock) -> None:
        """Test a missing edge exits 1."""
        mock_build.return_value.status.side_effect = EdgeDetectionError("Could not detect an active Caddy edge")

        result = self.runner.invoke(status, [])

        self.assertEqual(result.exit_code, 1)


if __name__ == "__main__":
    unittest.main()
