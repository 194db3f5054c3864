import queue
import socket
import threading

import pytest

from scriptclient import database, session_logger


class SinkServer:
    """Accepts one connection, optionally replies, and records everything received."""

    def __init__(self, reply: bytes = b"", close_on_accept: bool = False):
        self._sock = socket.create_server(("127.0.0.1", 0))
        self._sock.settimeout(10.0)
        self.host, self.port = self._sock.getsockname()[:2]
        self.reply = reply
        self.close_on_accept = close_on_accept
        self.chunks = []
        self.accepted = threading.Event()
        self.done = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        try:
            conn, _ = self._sock.accept()
        except OSError:
            self.done.set()
            return
        try:
            with conn:
                self.accepted.set()
                if self.close_on_accept:
                    return
                if self.reply:
                    conn.sendall(self.reply)
                conn.settimeout(10.0)
                while True:
                    data = conn.recv(4096)
                    if not data:
                        break
                    self.chunks.append(data)
        except OSError:
            pass
        finally:
            self.done.set()

    @property
    def received(self) -> bytes:
        return b"".join(self.chunks)

    def wait(self, timeout: float = 5.0) -> bytes:
        assert self.done.wait(timeout), "server did not see the connection close"
        return self.received

    def close(self):
        self._sock.close()


class QueueConsole:
    """Console stand-in whose readline blocks until the test feeds a line."""

    def __init__(self):
        self.lines = queue.Queue()

    def feed(self, line: str):
        self.lines.put(line)

    def readline(self) -> str:
        return self.lines.get(timeout=10.0)


@pytest.fixture
def sink_server():
    servers = []

    def _make(**kwargs) -> SinkServer:
        server = SinkServer(**kwargs)
        servers.append(server)
        return server

    yield _make
    for server in servers:
        server.close()


@pytest.fixture
def refused_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def event_db(tmp_path):
    database.init_db(f"sqlite:///{tmp_path / 'events.db'}")
    session_logger.set_log_dir(tmp_path / "logs")
    yield tmp_path


def frame(msg_type: int, xid: int, body: bytes = b"") -> bytes:
    length = 8 + len(body)
    return bytes([0x04, msg_type]) + length.to_bytes(2, "big") + xid.to_bytes(4, "big") + body
