from __future__ import annotations

import enum
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from .camera import (
    EXPORT_FORMATS,
    BufferType,
    CameraBackend,
    CameraError,
    CameraHandle,
    CameraStatus,
    connect_camera,
)
from .exposure import format_rational, parse_aperture, parse_shutter_speed
from .responses import DEFAULT_CHUNK_SIZE, BufferStream, Response, SessionAction
from .session import CameraSession

logger = logging.getLogger(__name__)

ECHO_LIMIT = 100

_INT_RE = re.compile(r"^[+-]?[0-9]+$")
_DIGITS_RE = re.compile(r"^[0-9]+$")
_ISO_RANGE_RE = re.compile(r"^([0-9]+)-([0-9]+)$")


class ProtocolError(ValueError):
    pass


class ArgKind(enum.Enum):
    NONE = "none"
    OPTIONAL_TEXT = "optional_text"
    TEXT = "text"
    INT = "int"


@dataclass(frozen=True)
class Command:
    name: str
    argument: str | None = None


@dataclass(frozen=True)
class CommandSpec:
    handler: str
    argument: ArgKind = ArgKind.NONE
    needs_camera: bool = False
    needs_status: bool = False
    argument_label: str = "argument"

    def parse_argument(self, raw: str | None) -> str | int | None:
        if self.argument is ArgKind.NONE:
            if raw is not None:
                raise ProtocolError("unexpected argument")
            return None
        if self.argument is ArgKind.OPTIONAL_TEXT:
            return raw if raw is not None else ""
        if raw is None:
            raise ProtocolError("missing argument")
        if self.argument is ArgKind.TEXT:
            return raw
        text = raw.strip()
        if not _INT_RE.match(text):
            raise ProtocolError(f"invalid {self.argument_label}")
        return int(text)


def _index_command(handler: str) -> CommandSpec:
    return CommandSpec(handler, ArgKind.INT, needs_camera=True, argument_label="buffer index")


def _status_query(handler: str) -> CommandSpec:
    return CommandSpec(handler, needs_camera=True, needs_status=True)


COMMANDS: dict[str, CommandSpec] = {
    "stopserver": CommandSpec("_stopserver"),
    "disconnect": CommandSpec("_disconnect"),
    "echo": CommandSpec("_echo", ArgKind.OPTIONAL_TEXT),
    "usleep": CommandSpec("_usleep", ArgKind.INT, argument_label="microseconds"),
    "connect": CommandSpec("_connect"),
    "update_status": CommandSpec("_update_status", needs_camera=True),
    "get_camera_name": CommandSpec("_get_camera_name", needs_camera=True),
    "get_lens_name": _status_query("_get_lens_name"),
    "pslr_get_lens_name": _status_query("_get_lens_name"),
    "get_current_shutter_speed": _status_query("_get_current_shutter_speed"),
    "get_current_aperture": _status_query("_get_current_aperture"),
    "get_current_iso": _status_query("_get_current_iso"),
    "get_bufmask": _status_query("_get_bufmask"),
    "get_auto_bracket_mode": _status_query("_get_auto_bracket_mode"),
    "get_auto_bracket_picture_count": _status_query("_get_auto_bracket_picture_count"),
    "focus": CommandSpec("_focus", needs_camera=True),
    "shutter": CommandSpec("_shutter", needs_camera=True),
    "delete_buffer": _index_command("_delete_buffer"),
    "get_preview_buffer": _index_command("_get_preview_buffer"),
    "get_buffer": _index_command("_get_buffer"),
    "get_jpeg_buffer": CommandSpec(
        "_get_jpeg_buffer", ArgKind.INT, needs_camera=True, needs_status=True, argument_label="buffer index"
    ),
    "get_buffer_type": CommandSpec("_get_buffer_type"),
    "set_buffer_type": CommandSpec("_set_buffer_type", ArgKind.TEXT),
    "set_shutter_speed": CommandSpec("_set_shutter_speed", ArgKind.TEXT, needs_camera=True),
    "set_aperture": CommandSpec("_set_aperture", ArgKind.TEXT, needs_camera=True),
    "set_iso": CommandSpec("_set_iso", ArgKind.TEXT, needs_camera=True),
}


def parse_command(line: str) -> Command:
    """Split ``'<name> <argument>'`` at the first space.

    Nothing after the separator means no argument.
    """
    name, _sep, rest = line.partition(" ")
    return Command(name=name, argument=rest if rest else None)


def parse_iso(text: str) -> tuple[int, int, int] | None:
    """Return ``(iso, auto_min, auto_max)`` or None when ``text`` is unusable.

    A complete ``min-max`` range wins over a plain integer.
    """
    raw = text.strip()
    match = _ISO_RANGE_RE.match(raw)
    if match is not None:
        low, high = int(match.group(1)), int(match.group(2))
        if 0 < low <= high:
            return 0, low, high

    if _DIGITS_RE.match(raw):
        iso = int(raw)
        if iso > 0:
            return iso, 0, 0
    return None


class CommandDispatcher:
    def __init__(
        self,
        session: CameraSession,
        backend: CameraBackend,
        *,
        connect_timeout: float | None = None,
        model: str | None = None,
        device: str | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        echo_limit: int = ECHO_LIMIT,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self._session: CameraSession = session
        self._backend: CameraBackend = backend
        self._connect_timeout: float | None = connect_timeout
        self._model: str | None = model
        self._device: str | None = device
        self._chunk_size: int = int(chunk_size)
        self._echo_limit: int = int(echo_limit)
        self._sleep_fn: Callable[[float], None] = sleep_fn

    @property
    def session(self) -> CameraSession:
        return self._session

    def dispatch(self, line: str) -> Response:
        command = parse_command(line)
        spec = COMMANDS.get(command.name)
        if spec is None:
            logger.debug("invalid command %r", line)
            return Response.fail("invalid command")

        logger.debug("command %s arg=%r", command.name, command.argument)
        if spec.needs_camera and self._session.handle is None:
            return Response.fail("no camera connected")
        if spec.needs_status and self._session.last_status is None:
            return Response.fail("no status available")

        try:
            argument = spec.parse_argument(command.argument)
            handler: Callable[..., Response] = getattr(self, spec.handler)
            if spec.argument is ArgKind.NONE:
                return handler()
            return handler(argument)
        except ProtocolError as exc:
            return Response.fail(exc)
        except CameraError as exc:
            logger.warning("%s failed: %s", command.name, exc)
            return Response.fail(exc)
        except Exception as exc:
            logger.exception("%s raised", command.name)
            return Response.fail(f"internal error: {exc}")

    @property
    def _handle(self) -> CameraHandle:
        handle = self._session.handle
        if handle is None:
            raise ProtocolError("no camera connected")
        return handle

    @property
    def _status(self) -> CameraStatus:
        status = self._session.last_status
        if status is None:
            raise ProtocolError("no status available")
        return status

    def _close_camera(self) -> None:
        try:
            self._session.close()
        except CameraError as exc:
            logger.warning("closing camera failed: %s", exc)

    def _stopserver(self) -> Response:
        self._close_camera()
        return Response.ok(action=SessionAction.STOP_SERVER)

    def _disconnect(self) -> Response:
        self._close_camera()
        return Response.ok()

    def _echo(self, text: str) -> Response:
        return Response.ok(text[: self._echo_limit])

    def _usleep(self, microseconds: int) -> Response:
        if microseconds < 0:
            raise ProtocolError("invalid microseconds")
        self._sleep_fn(microseconds / 1_000_000)
        return Response.ok()

    def _connect(self) -> Response:
        if self._session.handle is not None:
            return Response.ok()
        handle = connect_camera(
            self._backend,
            model=self._model,
            device=self._device,
            timeout=self._connect_timeout,
        )
        self._session.attach(handle)
        return Response.ok()

    def _update_status(self) -> Response:
        handle = self._handle
        self._session.last_status = None
        self._session.last_status = handle.get_status()
        return Response.ok()

    def _get_camera_name(self) -> Response:
        return Response.ok(self._handle.get_camera_name())

    def _get_lens_name(self) -> Response:
        status = self._status
        return Response.ok(self._backend.lens_name(status.lens_id1, status.lens_id2))

    def _get_current_shutter_speed(self) -> Response:
        speed = self._status.current_shutter_speed
        return Response.ok(f"{speed.nom}/{speed.denom}")

    def _get_current_aperture(self) -> Response:
        return Response.ok(format_rational(self._status.current_aperture, "%.1f"))

    def _get_current_iso(self) -> Response:
        return Response.ok(self._status.current_iso)

    def _get_bufmask(self) -> Response:
        return Response.ok(self._status.bufmask)

    def _get_auto_bracket_mode(self) -> Response:
        return Response.ok(self._status.auto_bracket_mode)

    def _get_auto_bracket_picture_count(self) -> Response:
        return Response.ok(self._status.auto_bracket_picture_count)

    def _focus(self) -> Response:
        self._handle.focus()
        return Response.ok()

    def _shutter(self) -> Response:
        self._handle.shutter()
        return Response.ok()

    def _delete_buffer(self, index: int) -> Response:
        if index < 0:
            raise ProtocolError("invalid buffer index")
        self._handle.delete_buffer(index)
        return Response.ok()

    def _get_preview_buffer(self, index: int) -> Response:
        return self._open_stream(index, BufferType.PREVIEW, 0)

    def _get_buffer(self, index: int) -> Response:
        return self._open_stream(index, self._session.export_format, 0)

    def _get_jpeg_buffer(self, index: int) -> Response:
        return self._open_stream(index, BufferType.JPEG, self._status.jpeg_resolution)

    def _open_stream(self, index: int, buffer_type: BufferType, resolution: int) -> Response:
        if index < 0:
            raise ProtocolError("invalid buffer index")
        handle = self._handle
        handle.buffer_open(index, buffer_type, resolution)
        try:
            size = handle.buffer_get_size()
        except Exception:
            handle.buffer_close()
            raise
        logger.debug("buffer %d opened as %s, %d bytes", index, buffer_type.value, size)
        return Response.stream(BufferStream(handle, size, self._chunk_size))

    def _get_buffer_type(self) -> Response:
        return Response.ok(self._session.export_format.value)

    def _set_buffer_type(self, value: str) -> Response:
        for export_format in EXPORT_FORMATS:
            if value == export_format.value:
                self._session.export_format = export_format
                return Response.ok(export_format.value)
        return Response.fail("invalid buffer type (must be PEF or DNG)")

    def _set_shutter_speed(self, text: str) -> Response:
        speed = parse_shutter_speed(text)
        if speed.is_zero:
            return Response.fail("invalid shutter speed value")
        self._handle.set_shutter_speed(speed)
        self._session.shutter_speed = speed
        return Response.ok(f"{speed.nom} {speed.denom}")

    def _set_aperture(self, text: str) -> Response:
        aperture = parse_aperture(text)
        if aperture.is_zero:
            return Response.fail("invalid aperture value")
        self._handle.set_aperture(aperture)
        self._session.aperture = aperture
        return Response.ok(format_rational(aperture, "%.1f"))

    def _set_iso(self, text: str) -> Response:
        parsed = parse_iso(text)
        if parsed is None:
            return Response.fail("invalid ISO value")
        iso, low, high = parsed
        self._handle.set_iso(iso, low, high)
        if iso:
            self._session.set_fixed_iso(iso)
        else:
            self._session.set_auto_iso(low, high)
        return Response.ok(f"{iso} {low}-{high}")
