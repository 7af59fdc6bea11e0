"""
Pytest fixtures for functional tests.

These work on REAL files, REAL file locks and REAL processes.
NO MOCKING.
"""

import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from lib.test_stubs import SAMPLE_CADDYFILE, make_config  # noqa: E402


@pytest.fixture
def edge_config(tmp_path):
    """Edge Caddyfile as it would sit on the host before a switch.

    Returns:
        Path to the Caddyfile
    """
    path = tmp_path / "edge" / "Caddyfile"
    path.parent.mkdir()
    path.write_text(SAMPLE_CADDYFILE, encoding="utf-8")
    return path


@pytest.fixture
def mounted_view(edge_config, tmp_path):
    """Hard link to the edge config, standing in for the container's view of a bind mount.

    A write that replaces the file (rename) breaks the link; an in-place write
    shows up on both sides.
    """
    view = tmp_path / "container-view"
    os.link(edge_config, view)
    return view


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in the test directory"""
    return make_config(tmp_path)
