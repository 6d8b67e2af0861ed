import argparse
import socket
import sys
from typing import BinaryIO, Optional, Tuple

DEFAULT_PORT = 8888

BUFFER_COMMANDS = ("get_buffer", "get_preview_buffer", "get_jpeg_buffer")


class CommandFailed(RuntimeError):
    def __init__(self, command: str, message: str):
        super().__init__(f"{command}: {message}" if message else command)
        self.command = command
        self.message = message


def parse_status_line(line: str) -> Tuple[int, str]:
    """Split '<code> <message>' into its parts; the message may be empty."""
    code_text, _, message = line.partition(" ")
    try:
        code = int(code_text)
    except ValueError as e:
        raise ValueError(f"Invalid status line from server: {line!r}") from e
    return code, message


class ControlClient:
    """Blocking client for the camera server's line protocol.

    Usage:
        with ControlClient("192.168.1.20") as client:
            client.connect_camera()
            client.command("shutter")
            data = client.fetch_buffer("get_jpeg_buffer", 0)
    """

    def __init__(self, host: str, port: int = DEFAULT_PORT, timeout: float = 5.0):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._sock: Optional[socket.socket] = None
        self._reader: Optional[BinaryIO] = None

    def open(self) -> None:
        if self._sock is not None:
            return
        self._sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        self._reader = self._sock.makefile("rb")

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> "ControlClient":
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def send_line(self, line: str) -> None:
        self.open()
        if self._sock is None:
            raise RuntimeError("control connection is not open")
        self._sock.sendall(line.encode("utf-8") + b"\n")

    def read_status(self) -> Tuple[int, str]:
        raw = self._require_reader().readline()
        if not raw:
            raise ConnectionError("Socket closed by peer before newline")
        return parse_status_line(raw.decode("utf-8").rstrip("\n"))

    def read_payload(self, size: int) -> bytes:
        data = self._require_reader().read(size)
        if len(data) != size:
            raise ConnectionError(f"Payload truncated: {len(data)} of {size} bytes")
        return data

    def _require_reader(self) -> BinaryIO:
        if self._reader is None:
            raise RuntimeError("control connection is not open")
        return self._reader

    def request(self, line: str) -> Tuple[int, str]:
        """Send one command line and return the (code, message) reply."""
        self.send_line(line)
        return self.read_status()

    def command(self, line: str) -> str:
        """Like request() but raises CommandFailed on a non-zero code."""
        code, message = self.request(line)
        if code != 0:
            raise CommandFailed(line, message)
        return message

    def fetch_buffer(self, command: str, index: int) -> bytes:
        if command not in BUFFER_COMMANDS:
            raise ValueError(f"not a buffer command: {command}")
        line = f"{command} {int(index)}"
        message = self.command(line)
        try:
            size = int(message)
        except ValueError as e:
            raise ValueError(f"Invalid payload size from server: {message!r}") from e
        return self.read_payload(size)

    def echo(self, text: str) -> str:
        return self.command(f"echo {text}")

    def connect_camera(self) -> None:
        self.command("connect")

    def disconnect_camera(self) -> None:
        self.command("disconnect")

    def update_status(self) -> None:
        self.command("update_status")

    def set_buffer_type(self, value: str) -> str:
        return self.command(f"set_buffer_type {value}")

    def set_iso(self, value: str) -> str:
        return self.command(f"set_iso {value}")

    def stop_server(self) -> None:
        self.command("stopserver")


def _build_cli_and_run() -> None:
    parser = argparse.ArgumentParser(prog="camhost.control", description="Camera server control client")
    parser.add_argument("--ip", required=True, help="IP address of the camera server")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Port of the camera server (default {DEFAULT_PORT})")
    parser.add_argument("--timeout", type=float, default=5.0, help="Socket timeout in seconds")
    parser.add_argument("--out", default=None, help="File to write buffer payloads to")
    parser.add_argument("command", help="Server command, e.g. connect, update_status, get_buffer")
    parser.add_argument("argument", nargs="?", default=None, help="Optional command argument")

    args = parser.parse_args()

    try:
        with ControlClient(args.ip, args.port, timeout=args.timeout) as client:
            if args.command in BUFFER_COMMANDS:
                if args.argument is None or args.out is None:
                    raise SystemExit(f"{args.command} needs a buffer index and --out")
                data = client.fetch_buffer(args.command, int(args.argument))
                with open(args.out, "wb") as f:
                    f.write(data)
                print(f"0 {len(data)} bytes written to {args.out}")
                sys.exit(0)

            line = args.command if args.argument is None else f"{args.command} {args.argument}"
            code, message = client.request(line)
            print(f"{code} {message}".rstrip())
            sys.exit(0 if code == 0 else 1)
    except (OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(2)
    except CommandFailed as e:
        print(f"1 {e.message}".rstrip())
        sys.exit(1)


if __name__ == "__main__":
    _build_cli_and_run()
