"""Ambient: persistent project and branch memory for command-line AI agents."""

__version__ = "0.1.0"
