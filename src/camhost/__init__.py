"""
Host-side modules for talking to the camera server.

Modules:
- control: blocking line-protocol client and CLI
"""

from .control import ControlClient, CommandFailed, parse_status_line

__all__ = [
    "ControlClient",
    "CommandFailed",
    "parse_status_line",
]
