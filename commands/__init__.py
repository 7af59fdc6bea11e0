"""
edgeswitch CLI Commands

This module contains CLI command implementations for the edgeswitch tool,
one module per command.
"""

__all__ = ["deploy", "pin", "status"]
