from __future__ import annotations

import argparse
import logging
import socket
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .camera import BackendUnavailableError, CameraBackend, CameraError, load_backend
from .commands import CommandDispatcher
from .handler import MAX_COMMAND_BYTES, SessionHandler
from .responses import DEFAULT_CHUNK_SIZE, SessionAction
from .session import CameraSession

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8888
LISTEN_BACKLOG = 3

EXIT_OK = 0
EXIT_FAILURE = 1

LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class StartupError(RuntimeError):
    pass


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    idle_timeout: float = 0.0
    backend: str = "dummy"
    connect_timeout: float | None = None
    model: str | None = None
    device: str | None = None
    max_command_bytes: int = MAX_COMMAND_BYTES
    chunk_size: int = DEFAULT_CHUNK_SIZE
    log_level: str = "INFO"


class Listener:
    """Accepts one client at a time and serves it until it leaves.

    Returns from :meth:`serve` with an exit status once no client arrived
    within the idle timeout, accepting failed, or a client sent ``stopserver``.
    """

    def __init__(
        self,
        config: ServerConfig,
        backend: CameraBackend,
        session: CameraSession | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self._config: ServerConfig = config
        self._session: CameraSession = session if session is not None else CameraSession()
        self._dispatcher: CommandDispatcher = CommandDispatcher(
            self._session,
            backend,
            connect_timeout=config.connect_timeout,
            model=config.model,
            device=config.device,
            chunk_size=config.chunk_size,
            sleep_fn=sleep_fn,
        )
        self._server_socket: socket.socket | None = None

    @property
    def session(self) -> CameraSession:
        return self._session

    @property
    def address(self) -> tuple[str, int]:
        if self._server_socket is None:
            raise RuntimeError("listener is not bound")
        host, port = self._server_socket.getsockname()[:2]
        return str(host), int(port)

    def bind(self) -> tuple[str, int]:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self._config.host, self._config.port))
            sock.listen(LISTEN_BACKLOG)
        except OSError as exc:
            sock.close()
            raise StartupError(f"cannot listen on {self._config.host}:{self._config.port}: {exc}") from exc

        self._server_socket = sock
        logger.debug("listening on %s:%d", *self.address)
        return self.address

    def serve(self) -> int:
        if self._server_socket is None:
            self.bind()
        sock = self._server_socket
        if sock is None:
            raise RuntimeError("listener is not bound")

        timeout = float(self._config.idle_timeout)
        sock.settimeout(timeout if timeout > 0 else None)

        try:
            while True:
                logger.debug("waiting for incoming connections")
                try:
                    conn, addr = sock.accept()
                except socket.timeout:
                    logger.info("no client within %gs, shutting down", timeout)
                    return EXIT_OK
                except OSError as exc:
                    logger.error("accept failed: %s", exc)
                    return EXIT_FAILURE

                conn.settimeout(None)
                logger.info("connection accepted from %s:%d", addr[0], addr[1])
                handler = SessionHandler(
                    conn,
                    self._dispatcher,
                    max_command_bytes=self._config.max_command_bytes,
                )
                if handler.run() is SessionAction.STOP_SERVER:
                    logger.info("stopserver received, shutting down")
                    return EXIT_OK
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        sock = self._server_socket
        self._server_socket = None
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass
        try:
            self._session.close()
        except CameraError as exc:
            logger.warning("closing camera failed: %s", exc)


def run_server(config: ServerConfig) -> int:
    """Serve clients until idle timeout or ``stopserver``; return the exit status."""
    try:
        backend = load_backend(config.backend)
    except BackendUnavailableError as exc:
        logger.error("camera backend unavailable: %s", exc)
        return EXIT_FAILURE

    listener = Listener(config, backend)
    try:
        listener.bind()
    except StartupError as exc:
        logger.error("%s", exc)
        return EXIT_FAILURE
    return listener.serve()


def configure_logging(level: str) -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        root.addHandler(handler)
    root.setLevel(level.upper())


def parse_args(argv: Sequence[str] | None = None) -> ServerConfig:
    parser = argparse.ArgumentParser(description="Camera remote control server (line based TCP protocol)")
    _ = parser.add_argument("--host", default="0.0.0.0", help="TCP bind host")
    _ = parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="TCP bind port")
    _ = parser.add_argument(
        "--timeout",
        type=float,
        default=0.0,
        help="Exit when no client connects within this many seconds (0 waits forever)",
    )
    _ = parser.add_argument(
        "--backend",
        default="dummy",
        help="Camera backend: 'dummy' or an import path 'package.module:factory'",
    )
    _ = parser.add_argument(
        "--connect-timeout",
        type=float,
        default=None,
        help="Seconds to keep looking for a camera on 'connect' (0 forever, default one attempt)",
    )
    _ = parser.add_argument("--model", default=None, help="Camera model passed to the backend")
    _ = parser.add_argument("--device", default=None, help="Camera device passed to the backend")
    _ = parser.add_argument(
        "--log-level",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        default="INFO",
        help="Logging level (default: INFO)",
    )

    namespace = parser.parse_args(argv)

    if not 0 < namespace.port <= 65535:
        raise SystemExit("--port out of range")
    if namespace.timeout < 0:
        raise SystemExit("--timeout must not be negative")
    if namespace.connect_timeout is not None and namespace.connect_timeout < 0:
        raise SystemExit("--connect-timeout must not be negative")

    return ServerConfig(
        host=namespace.host,
        port=namespace.port,
        idle_timeout=namespace.timeout,
        backend=namespace.backend,
        connect_timeout=namespace.connect_timeout,
        model=namespace.model,
        device=namespace.device,
        log_level=namespace.log_level,
    )


def main(argv: Sequence[str] | None = None) -> int:
    config = parse_args(argv)
    configure_logging(config.log_level)
    logger.info("camera server on %s:%d (backend=%s)", config.host, config.port, config.backend)

    try:
        return run_server(config)
    except KeyboardInterrupt:
        return EXIT_OK
