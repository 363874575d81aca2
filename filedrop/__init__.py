"""Ephemeral file drop addressed by short pickup codes."""

__version__ = "1.0.0"
