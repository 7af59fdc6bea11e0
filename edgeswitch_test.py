#!/usr/bin/env python3

import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from click.testing import CliRunner

import edgeswitch


class TestCLI(unittest.TestCase):
    """Tests for main CLI integration"""

    def setUp(self):
        """Set up test fixtures"""
        self.runner = CliRunner()

    def test_cli_help(self) -> None:
        """Test that CLI help works."""
        result = self.runner.invoke(edgeswitch.cli, ["--help"])

        self.assertEqual(result.exit_code, 0)
        self.assertIn("Blue/green release switcher", result.output)

    def test_cli_version(self) -> None:
        """Test that CLI version works."""
        result = self.runner.invoke(edgeswitch.cli, ["--version"])

        self.assertEqual(result.exit_code, 0)
        self.assertIn("0.1.0", result.output)

    def test_verbose_flag(self) -> None:
        """Test that --verbose flag is accepted."""
        result = self.runner.invoke(edgeswitch.cli, ["--verbose", "deploy", "--help"])
        self.assertEqual(result.exit_code, 0)

    def test_commands_registered(self) -> None:
        """Test that deploy, pin and status are registered."""
        for name, text in [("deploy", "Blue/green deploy"), ("pin", "Pin the edge route"), ("status", "Read-only")]:
            result = self.runner.invoke(edgeswitch.cli, [name, "--help"])

            self.assertEqual(result.exit_code, 0)
            self.assertIn(text, result.output)

    @patch("commands.status.build_coordinator")
    @patch("commands.common.load_config")
    def test_config_option_reaches_loader(self, mock_load: Mock, mock_build: Mock) -> None:
        """Test that --config is used to load the settings."""
        mock_load.return_value.log_file = None
        mock_build.return_value.status.side_effect = KeyError("stop")

        self.runner.invoke(edgeswitch.cli, ["--config", "/etc/edgeswitch.yml", "status"])

        mock_load.assert_called_once_with("/etc/edgeswitch.yml")


if __name__ == "__main__":
    unittest.main()
