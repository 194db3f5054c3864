"""
Scripted TCP test client.

Connects to a server, sends a scripted payload in one write, then forwards
console lines until "bye" or end of input, and shuts the connection down.
A test harness waits on the client's completion signals instead of polling.
"""

import enum
import functools
import logging
import ssl
import sys
import threading
import uuid
from concurrent.futures import Future
from typing import BinaryIO, Optional, TextIO, Union

from scriptclient.counter import UNIT_MESSAGE
from scriptclient.eventloop import EventLoopGroup
from scriptclient.pipeline import Connection, select_pipeline
from scriptclient.session_logger import close_session_log, log_session_event
from scriptclient.signals import CompletionSignal, SignalView

logger = logging.getLogger(__name__)

SENTINEL = "bye"
READ_CHUNK = 64


class ClientState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    PIPELINE_INSTALLED = "pipeline_installed"
    SENDING_PAYLOAD = "sending_payload"
    INTERACTIVE = "interactive"
    FAILED = "failed"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


def _completed_future(value=True) -> Future:
    future = Future()
    future.set_result(value)
    return future


class SimpleClient:
    def __init__(
        self,
        host: str,
        port: int,
        payload: Union[None, str, BinaryIO] = None,
        *,
        console: Optional[TextIO] = None,
        encoding: str = "utf-8",
        connect_timeout: Optional[float] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
        receive_unit: str = UNIT_MESSAGE,
        record_events: bool = False,
    ):
        self.host = host
        self.port = port
        self.console = console
        self.encoding = encoding
        self.connect_timeout = connect_timeout
        self.ssl_context = ssl_context
        self.receive_unit = receive_unit
        self.record_events = record_events
        self.session_id = f"{host}:{port}-{uuid.uuid4().hex[:8]}"

        self._payload: Optional[BinaryIO] = None
        if isinstance(payload, (str, bytes)) or hasattr(payload, "__fspath__"):
            try:
                self._payload = open(payload, "rb")
            except OSError as e:
                logger.error(f"Cannot open payload file {payload}: {e}")
        else:
            self._payload = payload

        self._secured = False
        self._data_limit = 0
        self._lock = threading.Lock()
        self._state = ClientState.IDLE
        self._started = False
        self._disconnect_requested = False
        self._group: Optional[EventLoopGroup] = None
        self._thread: Optional[threading.Thread] = None
        self.failure: Optional[BaseException] = None

        self._connected = CompletionSignal("connected")
        self._payload_sent = CompletionSignal("payload-sent")
        self._data_received = CompletionSignal("data-received")
        for signal in (self._connected, self._payload_sent, self._data_received):
            signal.view().future.add_done_callback(functools.partial(self._on_signal_settled, signal.name))

    # -- configuration ---------------------------------------------------

    def set_secured_client(self, secured: bool):
        with self._lock:
            if self._started:
                logger.warning(f"[{self.session_id}] Security mode cannot change after start, ignoring")
                return
            self._secured = bool(secured)

    def set_data_limit(self, data_limit: int):
        if data_limit < 0:
            raise ValueError("Receive threshold cannot be negative")
        with self._lock:
            if self._started:
                logger.warning(f"[{self.session_id}] Receive threshold cannot change after start, ignoring")
                return
            self._data_limit = data_limit

    # -- observers -------------------------------------------------------

    @property
    def connected(self) -> SignalView:
        return self._connected.view()

    @property
    def payload_sent(self) -> SignalView:
        return self._payload_sent.view()

    @property
    def data_received(self) -> SignalView:
        return self._data_received.view()

    @property
    def state(self) -> ClientState:
        return self._state

    def _set_state(self, state: ClientState):
        logger.debug(f"[{self.session_id}] {self._state.value} -> {state.value}")
        self._state = state
        self._record("DEBUG", "STATE", f"State {state.value}")

    def _record(self, level: str, category: str, message: str):
        if self.record_events:
            log_session_event(self.session_id, level, category, message)

    def _on_signal_settled(self, name: str, future: Future):
        error = future.exception()
        if error is None:
            self._record("INFO", "SIGNAL", f"Signal {name} succeeded")
        else:
            self._record("WARNING", "SIGNAL", f"Signal {name} failed: {error}")

    # -- lifecycle -------------------------------------------------------

    def start(self) -> threading.Thread:
        """Run the lifecycle on a dedicated thread."""
        thread = threading.Thread(target=self.run, name=f"scriptclient-{self.session_id}", daemon=True)
        self._thread = thread
        thread.start()
        return thread

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for a started run to finish. Returns True if it did."""
        if self._thread is None:
            return self._state is ClientState.CLOSED
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def run(self):
        with self._lock:
            if self._started:
                raise RuntimeError("A client can only be run once")
            self._started = True
            secured = self._secured
            data_limit = self._data_limit
            if not self._disconnect_requested:
                self._group = EventLoopGroup(name=f"io-{self.session_id}")

        if self._group is None or not self._group.start():
            logger.info(f"[{self.session_id}] Disconnected before start, closing")
            self._close_payload()
            self._settle_pending(ConnectionError("Client disconnected before start"))
            self._set_state(ClientState.CLOSED)
            if self.record_events:
                close_session_log(self.session_id)
            return

        try:
            self._set_state(ClientState.CONNECTING)
            pipeline = select_pipeline(
                secured,
                self._connected,
                self._data_received,
                data_limit,
                self.receive_unit,
                ssl_context=self.ssl_context,
                label=self.session_id,
            )
            self._record("INFO", "TLS" if secured else "TCP", f"Connecting to {self.host}:{self.port}")
            connection = self._group.run_sync(self._open(pipeline))
            self._set_state(ClientState.PIPELINE_INSTALLED)
            self._record("INFO", "TCP", "Connected")

            self._set_state(ClientState.SENDING_PAYLOAD)
            if self._send_payload(connection):
                self._set_state(ClientState.INTERACTIVE)
                self._forward_console(connection)
        except Exception as e:
            logger.error(f"[{self.session_id}] {e}", exc_info=not isinstance(e, ConnectionError))
            self.failure = e
            self._set_state(ClientState.FAILED)
            self._record("ERROR", "TCP", f"Run failed: {e}")
            self._connected.fail(e)
            self._payload_sent.fail(e)
        finally:
            self._close_payload()
            self._shutdown()

    async def _open(self, pipeline) -> Connection:
        reader, writer = await pipeline.open(self.host, self.port, timeout=self.connect_timeout)
        connection = Connection(self._group, reader, writer, label=self.session_id)
        self._group.add_closer(connection.aclose)
        return connection

    def _send_payload(self, connection: Connection) -> bool:
        """Drain the payload source into one write. Returns False on I/O failure."""
        source = self._payload
        if source is None:
            logger.debug(f"[{self.session_id}] No payload configured")
            self._payload_sent.set(True)
            return True

        self._payload = None
        buffer = bytearray()
        try:
            try:
                for chunk in iter(lambda: source.read(READ_CHUNK), b""):
                    buffer.extend(chunk)
            finally:
                source.close()
            connection.write(buffer)
        except Exception as e:
            logger.error(f"[{self.session_id}] Payload failed: {e}")
            self._record("ERROR", "PAYLOAD", f"Payload failed: {e}")
            self._payload_sent.fail(e)
            return False

        logger.info(f"[{self.session_id}] Payload of {len(buffer)} byte(s) sent")
        self._record("INFO", "PAYLOAD", f"Payload written ({len(buffer)} bytes)")
        self._payload_sent.set(True)
        return True

    def _forward_console(self, connection: Connection):
        console = self.console if self.console is not None else sys.stdin
        while not self._group.is_shutting_down:
            line = console.readline()
            if not line:
                logger.debug(f"[{self.session_id}] End of console input")
                break
            line = line.rstrip("\r\n")
            try:
                connection.write(line.encode(self.encoding))
            except ConnectionError as e:
                logger.warning(f"[{self.session_id}] Dropped console line: {e}")
                break
            self._record("DEBUG", "CONSOLE", f"Line written ({len(line)} chars)")

            if line.lower() == SENTINEL:
                logger.info("Bye")
                break
        logger.debug(f"[{self.session_id}] Console forwarding done")

    def _close_payload(self):
        if self._payload is not None:
            try:
                self._payload.close()
            except OSError as e:
                logger.warning(f"[{self.session_id}] Failed to close payload source: {e}")
            self._payload = None

    def _shutdown(self):
        self._set_state(ClientState.SHUTTING_DOWN)
        try:
            self._group.shutdown_gracefully().result()
        except Exception as e:
            logger.error(f"[{self.session_id}] Error releasing I/O resources: {e}")
        self._settle_pending(ConnectionError("Client closed before the event occurred"))
        self._set_state(ClientState.CLOSED)
        self._record("INFO", "STATE", "Closed")
        if self.record_events:
            close_session_log(self.session_id)

    def _settle_pending(self, error: Exception):
        for signal in (self._connected, self._payload_sent, self._data_received):
            if signal.fail(error):
                logger.debug(f"[{self.session_id}] Signal '{signal.name}' failed at close")

    def disconnect(self) -> Future:
        """Release the I/O resources; returns a future completing when they are released."""
        logger.debug(f"[{self.session_id}] disconnecting client")
        with self._lock:
            group = self._group
            if group is None:
                self._disconnect_requested = True
                return _completed_future()
        if self._state is not ClientState.CLOSED:
            self._record("INFO", "STATE", "Disconnect requested")
        return group.shutdown_gracefully()
