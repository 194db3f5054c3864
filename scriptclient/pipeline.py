"""
Connection handling strategies.

A pipeline is chosen once, before connecting, from the security flag. Both
variants open the stream, settle the connected signal and attach the
inbound counter; the secured one does so only after the TLS handshake.
"""

import asyncio
import contextlib
import logging
import ssl
from typing import Optional, Tuple

from scriptclient.counter import InboundCounter, UNIT_MESSAGE
from scriptclient.eventloop import EventLoopGroup
from scriptclient.signals import CompletionSignal

logger = logging.getLogger(__name__)

PREVIEW_BYTES = 32


class Pipeline:
    secured = False

    def __init__(
        self,
        connected: CompletionSignal,
        data_received: CompletionSignal,
        data_limit: int,
        receive_unit: str = UNIT_MESSAGE,
        label: str = "",
    ):
        self.connected = connected
        self.label = label
        self.counter = InboundCounter(data_received, data_limit, receive_unit, label=label)
        self.reader_task: Optional[asyncio.Task] = None

    def ssl_context(self) -> Optional[ssl.SSLContext]:
        return None

    def _connect_error(self, host: str, port: int, exc: Exception) -> Exception:
        if isinstance(exc, asyncio.TimeoutError):
            return ConnectionError(f"Timed out connecting to {host}:{port}")
        return ConnectionError(f"Failed to connect to {host}:{port}: {exc}")

    async def open(
        self, host: str, port: int, timeout: Optional[float] = None
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open the stream and install the inbound counter before any data is read."""
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, ssl=self.ssl_context()), timeout=timeout
            )
        except Exception as e:
            error = self._connect_error(host, port, e)
            logger.error(f"[{self.label}] {error}")
            self.connected.fail(error)
            raise error from e

        self.on_established(writer)
        self.connected.set(True)
        self.counter.on_connected()
        self.reader_task = asyncio.get_running_loop().create_task(self.counter.consume(reader))
        return reader, writer

    def on_established(self, writer: asyncio.StreamWriter):
        logger.info(f"[{self.label}] Connected to {writer.get_extra_info('peername')}")


class PlainPipeline(Pipeline):
    pass


class SecuredPipeline(Pipeline):
    secured = True

    def __init__(self, *args, context: Optional[ssl.SSLContext] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._context = context or default_ssl_context()

    def ssl_context(self) -> ssl.SSLContext:
        return self._context

    def _connect_error(self, host: str, port: int, exc: Exception) -> Exception:
        if isinstance(exc, ssl.SSLError):
            return ConnectionError(f"TLS handshake with {host}:{port} failed: {exc}")
        return super()._connect_error(host, port, exc)

    def on_established(self, writer: asyncio.StreamWriter):
        cipher = writer.get_extra_info("cipher")
        logger.info(
            f"[{self.label}] TLS session established with {writer.get_extra_info('peername')}"
            f" cipher={cipher[0] if cipher else 'unknown'}"
        )


def default_ssl_context() -> ssl.SSLContext:
    """Client context accepting self-signed test endpoints."""
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def select_pipeline(
    secured: bool,
    connected: CompletionSignal,
    data_received: CompletionSignal,
    data_limit: int,
    receive_unit: str = UNIT_MESSAGE,
    ssl_context: Optional[ssl.SSLContext] = None,
    label: str = "",
) -> Pipeline:
    if secured:
        logger.debug(f"[{label}] Installing secured pipeline")
        return SecuredPipeline(
            connected, data_received, data_limit, receive_unit, label=label, context=ssl_context
        )
    logger.debug(f"[{label}] Installing plain pipeline")
    return PlainPipeline(connected, data_received, data_limit, receive_unit, label=label)


class Connection:
    """Outbound side of an open stream, driven from the run sequence thread."""

    def __init__(self, group: EventLoopGroup, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, label: str = ""):
        self.group = group
        self.reader = reader
        self.writer = writer
        self.label = label
        self.writes = 0
        self.bytes_written = 0

    def write(self, data: bytes):
        """Queue data on the transport without waiting for it to drain."""
        data = bytes(data)
        self.group.call_soon(self.writer.write, data)
        self.writes += 1
        self.bytes_written += len(data)
        preview = data[:PREVIEW_BYTES].hex(" ")
        if len(data) > PREVIEW_BYTES:
            preview += " ..."
        logger.debug(f"[{self.label}] C << {len(data)} byte(s): {preview}")

    async def aclose(self):
        if self.writer.is_closing():
            return
        self.writer.close()
        with contextlib.suppress(Exception):
            await self.writer.wait_closed()
        logger.debug(f"[{self.label}] Connection closed")
