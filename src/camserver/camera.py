from __future__ import annotations

import enum
import importlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol, cast

import cv2
import numpy as np

from .exposure import Rational


logger = logging.getLogger(__name__)

CONNECT_RETRY_SECONDS = 1.0

# Scale factor of each JPEG resolution setting relative to the sensor size.
JPEG_RESOLUTION_SCALES = (1.0, 0.75, 0.5, 0.25)

# libtiff COMPRESSION_NONE; raw containers are stored uncompressed.
TIFF_COMPRESSION_NONE = 1

LENS_NAMES: dict[tuple[int, int], str] = {
    (3, 244): "smc PENTAX-DA 18-55mm F3.5-5.6 AL II",
    (3, 252): "smc PENTAX-DA 50-200mm F4-5.6 ED",
    (4, 253): "smc PENTAX-DA 35mm F2.4 AL",
    (7, 243): "smc PENTAX-DA 40mm F2.8 Limited",
}


class CameraError(RuntimeError):
    pass


class CameraNotFoundError(CameraError):
    pass


class BackendUnavailableError(CameraError):
    pass


class BufferType(enum.Enum):
    PEF = "PEF"
    DNG = "DNG"
    JPEG = "JPEG"
    PREVIEW = "PREVIEW"


EXPORT_FORMATS = (BufferType.PEF, BufferType.DNG)


@dataclass(frozen=True)
class CameraStatus:
    current_shutter_speed: Rational
    current_aperture: Rational
    current_iso: int
    bufmask: int
    auto_bracket_mode: int
    auto_bracket_picture_count: int
    lens_id1: int
    lens_id2: int
    jpeg_resolution: int


class CameraHandle(Protocol):
    def connect(self) -> None: ...

    def disconnect(self) -> None: ...

    def shutdown(self) -> None: ...

    def get_status(self) -> CameraStatus: ...

    def get_camera_name(self) -> str: ...

    def focus(self) -> None: ...

    def shutter(self) -> None: ...

    def set_shutter_speed(self, value: Rational) -> None: ...

    def set_aperture(self, value: Rational) -> None: ...

    def set_iso(self, iso: int, auto_min: int, auto_max: int) -> None: ...

    def delete_buffer(self, index: int) -> None: ...

    def buffer_open(self, index: int, buffer_type: BufferType, resolution: int) -> None: ...

    def buffer_get_size(self) -> int: ...

    def buffer_read(self, max_bytes: int) -> bytes: ...

    def buffer_close(self) -> None: ...


class CameraBackend(Protocol):
    def open(self, model: str | None, device: str | None) -> CameraHandle: ...

    def lens_name(self, lens_id1: int, lens_id2: int) -> str: ...


def connect_camera(
    backend: CameraBackend,
    *,
    model: str | None = None,
    device: str | None = None,
    timeout: float | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> CameraHandle:
    """Find a camera and connect to it.

    While no device is found the lookup is retried once per second until
    ``timeout`` seconds have passed. ``timeout=0`` retries forever and
    ``timeout=None`` makes a single attempt.
    """
    started = clock()
    while True:
        try:
            handle = backend.open(model, device)
            break
        except CameraNotFoundError:
            if timeout is None:
                raise
            elapsed = clock() - started
            if timeout != 0 and elapsed >= timeout:
                raise CameraNotFoundError(f"{timeout:g}s timeout exceeded") from None
            logger.debug("no camera yet (%.1fs elapsed), retrying", elapsed)
            sleep_fn(CONNECT_RETRY_SECONDS)

    try:
        handle.connect()
    except Exception:
        handle.shutdown()
        raise
    return handle


def close_camera(handle: CameraHandle) -> None:
    try:
        handle.disconnect()
    finally:
        handle.shutdown()


@dataclass
class DummyCameraConfig:
    name: str = "PENTAX K-x"
    width: int = 640
    height: int = 480
    preview_width: int = 160
    preview_height: int = 120
    buffer_slots: int = 4
    num_dots: int = 5
    dot_radius: int = 6
    seed: int = 0
    lens_id1: int = 3
    lens_id2: int = 244
    jpeg_resolution: int = 0
    jpeg_quality: int = 90
    present: bool = True
    connect_error: str | None = None
    lens_names: dict[tuple[int, int], str] = field(default_factory=lambda: dict(LENS_NAMES))


class DummyCamera:
    """In-process camera that captures synthetic frames into numbered buffers."""

    def __init__(self, config: DummyCameraConfig | None = None):
        self._config: DummyCameraConfig = config if config is not None else DummyCameraConfig()
        self._connected: bool = False
        self._shut_down: bool = False
        self._frame_index: int = 0
        self._slots: list[np.ndarray | None] = [None] * max(1, int(self._config.buffer_slots))

        self._shutter_speed: Rational = Rational(1, 125)
        self._aperture: Rational = Rational(56, 10)
        self._iso: int = 200
        self._auto_iso: tuple[int, int] = (0, 0)
        self.focus_count: int = 0

        self._open_data: bytes | None = None
        self._read_offset: int = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def shut_down(self) -> bool:
        return self._shut_down

    @property
    def iso_setting(self) -> tuple[int, int, int]:
        return self._iso, self._auto_iso[0], self._auto_iso[1]

    @property
    def shutter_speed(self) -> Rational:
        return self._shutter_speed

    @property
    def aperture(self) -> Rational:
        return self._aperture

    def connect(self) -> None:
        if self._config.connect_error:
            raise CameraError(self._config.connect_error)
        self._connected = True
        self._shut_down = False

    def disconnect(self) -> None:
        self._connected = False

    def shutdown(self) -> None:
        self._open_data = None
        self._shut_down = True

    def get_status(self) -> CameraStatus:
        self._require_connected()
        current_iso = self._iso if self._iso else self._auto_iso[0]
        return CameraStatus(
            current_shutter_speed=self._shutter_speed,
            current_aperture=self._aperture,
            current_iso=current_iso,
            bufmask=self.bufmask,
            auto_bracket_mode=0,
            auto_bracket_picture_count=3,
            lens_id1=self._config.lens_id1,
            lens_id2=self._config.lens_id2,
            jpeg_resolution=self._config.jpeg_resolution,
        )

    @property
    def bufmask(self) -> int:
        mask = 0
        for index, frame in enumerate(self._slots):
            if frame is not None:
                mask |= 1 << index
        return mask

    def get_camera_name(self) -> str:
        self._require_connected()
        return self._config.name

    def focus(self) -> None:
        self._require_connected()
        self.focus_count += 1

    def shutter(self) -> None:
        self._require_connected()
        for index, frame in enumerate(self._slots):
            if frame is None:
                self._slots[index] = self._render_frame()
                logger.debug("captured frame into buffer %d", index)
                return
        raise CameraError("all buffers are full")

    def set_shutter_speed(self, value: Rational) -> None:
        self._require_connected()
        self._shutter_speed = value

    def set_aperture(self, value: Rational) -> None:
        self._require_connected()
        self._aperture = value

    def set_iso(self, iso: int, auto_min: int, auto_max: int) -> None:
        self._require_connected()
        self._iso = int(iso)
        self._auto_iso = (int(auto_min), int(auto_max))

    def delete_buffer(self, index: int) -> None:
        self._require_connected()
        self._check_index(index)
        self._slots[index] = None

    def buffer_open(self, index: int, buffer_type: BufferType, resolution: int) -> None:
        self._require_connected()
        if self._open_data is not None:
            raise CameraError("another buffer is already open")
        self._check_index(index)
        frame = self._slots[index]
        if frame is None:
            raise CameraError(f"buffer {index} is empty")

        self._open_data = self._encode(frame, buffer_type, resolution)
        self._read_offset = 0

    def buffer_get_size(self) -> int:
        if self._open_data is None:
            raise CameraError("no buffer open")
        return len(self._open_data)

    def buffer_read(self, max_bytes: int) -> bytes:
        data = self._open_data
        if data is None:
            raise CameraError("no buffer open")
        chunk = data[self._read_offset : self._read_offset + max(0, int(max_bytes))]
        self._read_offset += len(chunk)
        return chunk

    def buffer_close(self) -> None:
        self._open_data = None
        self._read_offset = 0

    def _require_connected(self) -> None:
        if not self._connected:
            raise CameraError("camera not connected")

    def _check_index(self, index: int) -> None:
        if index < 0 or index >= len(self._slots):
            raise CameraError(f"invalid buffer index {index}")

    def _render_frame(self) -> np.ndarray:
        cfg = self._config
        frame = np.zeros((cfg.height, cfg.width, 3), dtype=np.uint8)
        frame[:] = (40, 40, 40)

        radius = max(1, int(cfg.dot_radius))
        rng = np.random.default_rng(cfg.seed + self._frame_index)
        for _ in range(max(0, int(cfg.num_dots))):
            x = int(rng.integers(radius, max(radius + 1, cfg.width - radius)))
            y = int(rng.integers(radius, max(radius + 1, cfg.height - radius)))
            color = tuple(int(c) for c in rng.integers(64, 256, size=3))
            _ = cv2.circle(frame, (x, y), radius, color, thickness=-1)

        _ = cv2.putText(
            frame,
            f"#{self._frame_index}",
            (8, max(16, cfg.height - 8)),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.5,
            (255, 255, 255),
            1,
        )
        self._frame_index += 1
        return frame

    def _encode(self, frame: np.ndarray, buffer_type: BufferType, resolution: int) -> bytes:
        cfg = self._config
        if buffer_type is BufferType.PREVIEW:
            image = cv2.resize(frame, (cfg.preview_width, cfg.preview_height), interpolation=cv2.INTER_AREA)
            ext, params = ".jpg", [int(cv2.IMWRITE_JPEG_QUALITY), 70]
        elif buffer_type is BufferType.JPEG:
            if resolution < 0 or resolution >= len(JPEG_RESOLUTION_SCALES):
                raise CameraError(f"invalid jpeg resolution {resolution}")
            scale = JPEG_RESOLUTION_SCALES[resolution]
            size = (max(1, int(cfg.width * scale)), max(1, int(cfg.height * scale)))
            image = frame if scale == 1.0 else cv2.resize(frame, size, interpolation=cv2.INTER_AREA)
            ext, params = ".jpg", [int(cv2.IMWRITE_JPEG_QUALITY), int(cfg.jpeg_quality)]
        elif buffer_type is BufferType.PEF:
            # 12-bit sensor data in a 16-bit container
            image = frame.astype(np.uint16) << 4
            ext, params = ".tiff", [int(cv2.IMWRITE_TIFF_COMPRESSION), TIFF_COMPRESSION_NONE]
        elif buffer_type is BufferType.DNG:
            image = frame
            ext, params = ".tiff", [int(cv2.IMWRITE_TIFF_COMPRESSION), TIFF_COMPRESSION_NONE]
        else:
            raise CameraError(f"unsupported buffer type {buffer_type}")

        ok, encoded = cv2.imencode(ext, image, params)
        if not ok:
            raise CameraError(f"encoding {buffer_type.value} failed")
        return cast(np.ndarray, encoded).tobytes()


class DummyCameraBackend:
    def __init__(self, config: DummyCameraConfig | None = None):
        self._config: DummyCameraConfig = config if config is not None else DummyCameraConfig()
        self.last_camera: DummyCamera | None = None

    def open(self, model: str | None, device: str | None) -> CameraHandle:
        if not self._config.present:
            raise CameraNotFoundError("no camera found")
        camera = DummyCamera(self._config)
        self.last_camera = camera
        return camera

    def lens_name(self, lens_id1: int, lens_id2: int) -> str:
        return self._config.lens_names.get((lens_id1, lens_id2), f"Unknown lens ({lens_id1}, {lens_id2})")


def load_backend(name: str, dummy_config: DummyCameraConfig | None = None) -> CameraBackend:
    """Return the backend called ``name``: 'dummy' or 'package.module:factory'."""
    if name == "dummy":
        return DummyCameraBackend(dummy_config)

    module_name, sep, attr = name.partition(":")
    if not sep or not module_name or not attr:
        raise BackendUnavailableError(f"unknown_backend: {name}")

    try:
        module = importlib.import_module(module_name)
    except Exception as exc:
        raise BackendUnavailableError(f"backend_import_failed: {exc}") from exc

    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise BackendUnavailableError(f"backend_missing_{attr}")

    try:
        return cast(CameraBackend, factory())
    except Exception as exc:
        raise BackendUnavailableError(f"backend_start_failed: {exc}") from exc
