from __future__ import annotations

import socket
import sys
import threading
import time
from collections.abc import Generator
from pathlib import Path
from typing import TypedDict, cast

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from camhost.control import CommandFailed, ControlClient, parse_status_line
from camserver.camera import BufferType, DummyCameraBackend, DummyCameraConfig
from camserver.listener import Listener, ServerConfig, parse_args, run_server


class ServerInfo(TypedDict):
    ip: str
    tcp_port: int
    listener: Listener
    backend: DummyCameraBackend
    thread: threading.Thread
    result: list[int]


def _get_free_tcp_port(host: str = "127.0.0.1") -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        addr = cast(tuple[str, int], sock.getsockname())
        return int(addr[1])


@pytest.fixture()
def camera_server() -> Generator[ServerInfo, None, None]:
    backend = DummyCameraBackend(DummyCameraConfig(width=160, height=120))
    config = ServerConfig(host="127.0.0.1", port=0, idle_timeout=5.0)
    listener = Listener(config, backend)
    ip, port = listener.bind()

    result: list[int] = []
    thread = threading.Thread(target=lambda: result.append(listener.serve()), daemon=True)
    thread.start()

    try:
        yield {
            "ip": ip,
            "tcp_port": port,
            "listener": listener,
            "backend": backend,
            "thread": thread,
            "result": result,
        }
    finally:
        if thread.is_alive():
            try:
                with ControlClient(ip, port, timeout=1.0) as client:
                    client.stop_server()
            except OSError:
                pass
        thread.join(timeout=2.0)


def test_parse_status_line() -> None:
    assert parse_status_line("0") == (0, "")
    assert parse_status_line("0 hello world") == (0, "hello world")
    assert parse_status_line("1 no camera connected") == (1, "no camera connected")
    with pytest.raises(ValueError):
        _ = parse_status_line("ok")


def test_idle_timeout_exits_cleanly() -> None:
    listener = Listener(ServerConfig(host="127.0.0.1", port=0, idle_timeout=0.2), DummyCameraBackend())
    ip, port = listener.bind()

    started = time.monotonic()
    assert listener.serve() == 0
    assert time.monotonic() - started < 2.0

    with pytest.raises(OSError):
        _ = socket.create_connection((ip, port), timeout=0.5)


def test_session_flow_over_tcp(camera_server: ServerInfo) -> None:
    ip = camera_server["ip"]
    port = camera_server["tcp_port"]

    with ControlClient(ip, port, timeout=2.0) as client:
        assert client.echo("hello") == "hello"
        assert client.request("focus") == (1, "no camera connected")

        client.connect_camera()
        client.command("shutter")
        client.update_status()
        assert client.command("get_bufmask") == "1"
        assert client.command("get_camera_name") == "PENTAX K-x"

        dng = client.fetch_buffer("get_buffer", 0)
        assert dng[:4] in (b"II*\x00", b"MM\x00*")

        assert client.set_buffer_type("PEF") == "PEF"
        pef = client.fetch_buffer("get_buffer", 0)
        assert len(pef) > len(dng)

        preview = client.fetch_buffer("get_preview_buffer", 0)
        assert preview[:2] == b"\xff\xd8"
        jpeg = client.fetch_buffer("get_jpeg_buffer", 0)
        assert jpeg[:2] == b"\xff\xd8"

        assert client.set_iso("100-400") == "0 100-400"
        assert client.echo("still in sync") == "still in sync"

        with pytest.raises(CommandFailed, match="buffer 3 is empty"):
            _ = client.fetch_buffer("get_buffer", 3)


def test_camera_and_format_survive_reconnect(camera_server: ServerInfo) -> None:
    ip = camera_server["ip"]
    port = camera_server["tcp_port"]

    with ControlClient(ip, port, timeout=2.0) as client:
        client.connect_camera()
        assert client.set_buffer_type("PEF") == "PEF"

    with ControlClient(ip, port, timeout=2.0) as client:
        assert client.command("get_buffer_type") == "PEF"
        assert client.command("get_camera_name") == "PENTAX K-x"
        client.disconnect_camera()
        assert client.request("get_camera_name") == (1, "no camera connected")

    assert camera_server["thread"].is_alive()
    assert camera_server["listener"].session.export_format is BufferType.PEF


def test_stopserver_terminates_server(camera_server: ServerInfo) -> None:
    ip = camera_server["ip"]
    port = camera_server["tcp_port"]

    with ControlClient(ip, port, timeout=2.0) as client:
        client.connect_camera()
        client.stop_server()

    camera_server["thread"].join(timeout=2.0)
    assert not camera_server["thread"].is_alive()
    assert camera_server["result"] == [0]

    camera = camera_server["backend"].last_camera
    assert camera is not None
    assert camera.shut_down
    assert camera_server["listener"].session.handle is None


def test_run_server_reports_bind_failure() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen(1)
        port = int(cast(tuple[str, int], busy.getsockname())[1])

        assert run_server(ServerConfig(host="127.0.0.1", port=port, idle_timeout=0.1)) == 1


def test_run_server_reports_missing_backend() -> None:
    port = _get_free_tcp_port()
    config = ServerConfig(host="127.0.0.1", port=port, backend="no_such_camera_module:Backend")
    assert run_server(config) == 1


def test_run_server_idle_timeout_returns_zero() -> None:
    port = _get_free_tcp_port()
    assert run_server(ServerConfig(host="127.0.0.1", port=port, idle_timeout=0.1)) == 0


def test_parse_args() -> None:
    config = parse_args(["--port", "9000", "--timeout", "30", "--connect-timeout", "0", "--log-level", "DEBUG"])
    assert config.port == 9000
    assert config.idle_timeout == 30.0
    assert config.connect_timeout == 0.0
    assert config.backend == "dummy"
    assert config.log_level == "DEBUG"

    defaults = parse_args([])
    assert defaults.port == 8888
    assert defaults.idle_timeout == 0.0
    assert defaults.connect_timeout is None

    with pytest.raises(SystemExit):
        _ = parse_args(["--timeout", "-1"])


def test_control_client_reads_require_open_connection() -> None:
    client = ControlClient("127.0.0.1", _get_free_tcp_port(), timeout=0.5)
    with pytest.raises(RuntimeError, match="not open"):
        _ = client.read_status()
    with pytest.raises(RuntimeError, match="not open"):
        _ = client.read_payload(4)
