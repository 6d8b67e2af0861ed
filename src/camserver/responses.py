from __future__ import annotations

import enum
import logging
import socket
from collections.abc import Iterator
from dataclasses import dataclass

from .camera import CameraHandle

logger = logging.getLogger(__name__)

CODE_OK = 0
CODE_FAIL = 1

DEFAULT_CHUNK_SIZE = 65536


class SessionAction(enum.Enum):
    CONTINUE = "continue"
    STOP_SERVER = "stop_server"


class BufferStream:
    """An open camera buffer, read in chunks and closed when exhausted."""

    def __init__(self, handle: CameraHandle, size: int, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._handle: CameraHandle = handle
        self.size: int = int(size)
        self._chunk_size: int = max(1, int(chunk_size))
        self._closed: bool = False

    def chunks(self) -> Iterator[bytes]:
        remaining = self.size
        try:
            while remaining > 0:
                chunk = self._handle.buffer_read(min(self._chunk_size, remaining))
                if not chunk:
                    break
                chunk = chunk[:remaining]
                remaining -= len(chunk)
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._handle.buffer_close()


@dataclass
class Response:
    code: int
    message: str = ""
    payload: BufferStream | None = None
    action: SessionAction = SessionAction.CONTINUE

    @classmethod
    def ok(cls, message: object = "", action: SessionAction = SessionAction.CONTINUE) -> "Response":
        return cls(CODE_OK, str(message), action=action)

    @classmethod
    def fail(cls, message: object) -> "Response":
        return cls(CODE_FAIL, str(message))

    @classmethod
    def stream(cls, payload: BufferStream) -> "Response":
        return cls(CODE_OK, str(payload.size), payload=payload)

    def status_line(self) -> bytes:
        return render_status_line(self.code, self.message)


def render_status_line(code: int, message: str = "") -> bytes:
    text = f"{code} {message}\n" if message else f"{code}\n"
    return text.encode("utf-8")


class ResponseWriter:
    """Writes status lines and raw payloads to a client connection.

    Write failures are logged and reported through the return value only; a
    client that misses part of a payload is out of sync with the stream.
    """

    def __init__(self, conn: socket.socket):
        self._conn: socket.socket = conn

    def write(self, response: Response) -> bool:
        if not self._send(response.status_line()):
            if response.payload is not None:
                response.payload.close()
            return False
        if response.payload is None:
            return True
        return self.write_payload(response.payload)

    def write_payload(self, payload: BufferStream) -> bool:
        sent = 0
        chunks = payload.chunks()
        try:
            for chunk in chunks:
                if not self._send(chunk):
                    logger.warning("payload transfer aborted after %d of %d bytes", sent, payload.size)
                    return False
                sent += len(chunk)
        finally:
            chunks.close()

        if sent != payload.size:
            logger.error("buffer ended after %d of %d declared bytes", sent, payload.size)
            return False
        logger.debug("sent %d byte payload", sent)
        return True

    def _send(self, data: bytes) -> bool:
        try:
            self._conn.sendall(data)
        except OSError as exc:
            logger.warning("write to client failed: %s", exc)
            return False
        return True
