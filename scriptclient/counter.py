"""
Inbound unit counting for a single connection.

The counter is the only component that looks at inbound bytes. It is handed
the data-received signal and the threshold when the pipeline is installed,
and settles the signal once enough units have arrived.

Units:
  message - length-prefixed frames with an 8 byte header
            (version, type, 16-bit big-endian total length, xid)
  byte    - raw inbound bytes
"""

import asyncio
import logging
import struct

from scriptclient.signals import CompletionSignal

logger = logging.getLogger(__name__)

HEADER_LENGTH = 8
LENGTH_FIELD = struct.Struct("!H")
LENGTH_OFFSET = 2
READ_SIZE = 4096

UNIT_MESSAGE = "message"
UNIT_BYTE = "byte"
RECEIVE_UNITS = (UNIT_MESSAGE, UNIT_BYTE)


class InboundCounter:
    def __init__(self, signal: CompletionSignal, limit: int, unit: str = UNIT_MESSAGE, label: str = ""):
        if unit not in RECEIVE_UNITS:
            raise ValueError(f"Unknown receive unit: {unit}")
        self.signal = signal
        self.limit = limit
        self.unit = unit
        self.label = label
        self.count = 0
        self._buffer = bytearray()

    @property
    def satisfied(self) -> bool:
        return self.count >= self.limit

    def on_connected(self):
        """Called once the transport is ready; a zero threshold is met immediately."""
        if self.limit <= 0:
            self.signal.set(None)

    def feed(self, data: bytes) -> int:
        """Account for a chunk of inbound data. Returns the number of new units."""
        if self.unit == UNIT_BYTE:
            units = len(data)
        else:
            self._buffer.extend(data)
            units = 0
            while len(self._buffer) >= HEADER_LENGTH:
                (length,) = LENGTH_FIELD.unpack_from(self._buffer, LENGTH_OFFSET)
                if length < HEADER_LENGTH:
                    raise ValueError(f"Malformed frame header, declared length {length}")
                if len(self._buffer) < length:
                    break
                logger.debug(f"[{self.label}] S >> {bytes(self._buffer[:HEADER_LENGTH]).hex(' ')}")
                del self._buffer[:length]
                units += 1

        if units:
            self.count += units
            logger.debug(f"[{self.label}] Received {self.count}/{self.limit} {self.unit} unit(s)")
            if self.satisfied and self.signal.set(None):
                logger.info(f"[{self.label}] Receive threshold of {self.limit} reached")
        return units

    async def consume(self, reader: asyncio.StreamReader):
        """Read until EOF, counting units. Fails the signal if the stream ends short."""
        try:
            while True:
                data = await reader.read(READ_SIZE)
                if not data:
                    break
                self.feed(data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.label}] Inbound read failed: {e}")
            self.signal.fail(e)
            return

        if not self.satisfied:
            self.signal.fail(
                ConnectionError(f"Connection closed after {self.count} of {self.limit} {self.unit} unit(s)")
            )
        logger.debug(f"[{self.label}] Inbound stream closed")
