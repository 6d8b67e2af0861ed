"""
Camera remote control server.

Modules:
- exposure: shutter speed / aperture values and their text forms
- camera: camera-control backend protocol, simulated camera, backend loading
- session: process-wide camera state
- responses: status lines and binary payload writing
- commands: command table and dispatcher
- handler: per-connection command reader
- listener: accept loop, configuration and CLI
"""

from .camera import (
    BackendUnavailableError, BufferType, CameraBackend, CameraError,
    CameraHandle, CameraNotFoundError, CameraStatus, DummyCamera,
    DummyCameraBackend, DummyCameraConfig, connect_camera, load_backend,
)
from .commands import COMMANDS, Command, CommandDispatcher, parse_command, parse_iso
from .exposure import Rational, format_rational, parse_aperture, parse_shutter_speed
from .handler import SessionHandler
from .listener import Listener, ServerConfig, StartupError, main, run_server
from .responses import BufferStream, Response, ResponseWriter, SessionAction
from .session import CameraSession

__all__ = [
    # Camera
    "BackendUnavailableError",
    "BufferType",
    "CameraBackend",
    "CameraError",
    "CameraHandle",
    "CameraNotFoundError",
    "CameraStatus",
    "DummyCamera",
    "DummyCameraBackend",
    "DummyCameraConfig",
    "connect_camera",
    "load_backend",
    # Exposure
    "Rational",
    "format_rational",
    "parse_aperture",
    "parse_shutter_speed",
    # Protocol
    "COMMANDS",
    "Command",
    "CommandDispatcher",
    "parse_command",
    "parse_iso",
    "BufferStream",
    "Response",
    "ResponseWriter",
    "SessionAction",
    # Server
    "CameraSession",
    "SessionHandler",
    "Listener",
    "ServerConfig",
    "StartupError",
    "main",
    "run_server",
]
