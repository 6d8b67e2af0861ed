from __future__ import annotations

import logging
import socket

from .commands import CommandDispatcher
from .responses import Response, ResponseWriter, SessionAction

logger = logging.getLogger(__name__)

MAX_COMMAND_BYTES = 2000


class SessionHandler:
    """Serves one accepted connection until the client goes away.

    Commands are newline terminated. Several commands in one read are run in
    order and a command split over several reads is reassembled.
    """

    def __init__(
        self,
        conn: socket.socket,
        dispatcher: CommandDispatcher,
        *,
        max_command_bytes: int = MAX_COMMAND_BYTES,
    ):
        self._conn: socket.socket = conn
        self._dispatcher: CommandDispatcher = dispatcher
        self._writer: ResponseWriter = ResponseWriter(conn)
        self._max_command_bytes: int = int(max_command_bytes)
        self._buffer: bytearray = bytearray()
        self._discarding: bool = False

    def run(self) -> SessionAction:
        try:
            while True:
                try:
                    chunk = self._conn.recv(self._max_command_bytes)
                except OSError as exc:
                    logger.error("recv failed: %s", exc)
                    return SessionAction.CONTINUE

                if not chunk:
                    logger.info("client disconnected")
                    return SessionAction.CONTINUE

                if self.feed(chunk) is SessionAction.STOP_SERVER:
                    return SessionAction.STOP_SERVER
        finally:
            try:
                self._conn.close()
            except OSError:
                pass

    def feed(self, data: bytes) -> SessionAction:
        self._buffer.extend(data)

        while True:
            newline_idx = self._buffer.find(b"\n")
            if newline_idx < 0:
                break

            raw_line = bytes(self._buffer[:newline_idx]).replace(b"\r", b"")
            del self._buffer[: newline_idx + 1]

            if self._discarding:
                self._discarding = False
                continue

            if self._handle_line(raw_line) is SessionAction.STOP_SERVER:
                self._buffer.clear()
                return SessionAction.STOP_SERVER

        if len(self._buffer) > self._max_command_bytes:
            if not self._discarding:
                self._reply(Response.fail("command too long"))
            self._buffer.clear()
            self._discarding = True

        return SessionAction.CONTINUE

    def _handle_line(self, raw_line: bytes) -> SessionAction:
        if not raw_line:
            return SessionAction.CONTINUE

        if len(raw_line) > self._max_command_bytes:
            self._reply(Response.fail("command too long"))
            return SessionAction.CONTINUE

        try:
            line = raw_line.decode("utf-8")
        except UnicodeDecodeError:
            self._reply(Response.fail("invalid command"))
            return SessionAction.CONTINUE

        response = self._dispatcher.dispatch(line)
        self._reply(response)
        return response.action

    def _reply(self, response: Response) -> None:
        _ = self._writer.write(response)
