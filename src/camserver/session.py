"""Process-wide camera state shared by consecutive client sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .camera import BufferType, CameraHandle, CameraStatus, close_camera
from .exposure import Rational

logger = logging.getLogger(__name__)

DEFAULT_EXPORT_FORMAT = BufferType.DNG


@dataclass
class CameraSession:
    """At most one live camera handle plus the settings that go with it.

    ``export_format`` survives disconnects; everything read from or sent to
    the device is dropped together with the handle.
    """

    handle: CameraHandle | None = None
    export_format: BufferType = DEFAULT_EXPORT_FORMAT
    last_status: CameraStatus | None = None
    iso: int | None = None
    auto_iso_range: tuple[int, int] | None = None
    shutter_speed: Rational | None = None
    aperture: Rational | None = None

    @property
    def connected(self) -> bool:
        return self.handle is not None

    def attach(self, handle: CameraHandle) -> None:
        if self.handle is not None:
            raise RuntimeError("camera already attached")
        self.handle = handle
        logger.info("camera connected")

    def close(self) -> None:
        """Disconnect and shut down the camera if one is attached."""
        handle = self.handle
        self.handle = None
        self.last_status = None
        self.iso = None
        self.auto_iso_range = None
        self.shutter_speed = None
        self.aperture = None
        if handle is None:
            return
        try:
            close_camera(handle)
        finally:
            logger.info("camera closed")

    def set_fixed_iso(self, iso: int) -> None:
        self.iso = iso
        self.auto_iso_range = None

    def set_auto_iso(self, low: int, high: int) -> None:
        self.iso = None
        self.auto_iso_range = (low, high)
