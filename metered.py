#Filename: metered.py
"""
METERED TRANSPORT
Wraps an asyncio stream pair and counts the bytes that pass through it
without changing read/write semantics.

Counters are plain ints mutated only on the event loop thread, between
await points, so every increment is atomic with respect to other tasks.
"""

import asyncio
from typing import Optional

from structures import Peername

class MeteredStream:
    """
    Counting facade over a (reader, writer) pair.
    Either side may be None to meter a unidirectional stream.
    """
    __slots__ = ('reader', 'writer', '_bytes_read', '_bytes_written')

    def __init__(
        self,
        reader: Optional[asyncio.StreamReader],
        writer: Optional[asyncio.StreamWriter]
    ) -> None:
        self.reader = reader
        self.writer = writer
        self._bytes_read = 0
        self._bytes_written = 0

    @property
    def bytes_read(self) -> int:
        """Bytes returned by read() so far."""
        return self._bytes_read

    @property
    def bytes_written(self) -> int:
        """Bytes accepted and drained by write() so far."""
        return self._bytes_written

    @property
    def peername(self) -> Peername:
        if self.writer is None:
            return None
        return self.writer.get_extra_info('peername')

    async def read(self, n: int = -1) -> bytes:
        """Reads up to n bytes; b'' signals end-of-stream. Errors propagate unchanged."""
        if self.reader is None:
            raise RuntimeError("MeteredStream has no reader")
        data = await self.reader.read(n)
        if data:
            self._bytes_read += len(data)
        return data

    async def write(self, data: bytes) -> int:
        """
        Writes data and waits for the transport to accept it.
        The counter only moves after drain() succeeded.
        """
        if self.writer is None:
            raise RuntimeError("MeteredStream has no writer")
        if not data:
            return 0
        self.writer.write(data)
        await self.writer.drain()
        self._bytes_written += len(data)
        return len(data)

    def at_eof(self) -> bool:
        return self.reader is None or self.reader.at_eof()

    def can_write_eof(self) -> bool:
        if self.writer is None or self.writer.is_closing():
            return False
        try:
            return self.writer.can_write_eof()
        except (AttributeError, NotImplementedError):
            return False

    def write_eof(self) -> None:
        """Half-closes the write side when the transport supports it."""
        if self.can_write_eof():
            try:
                self.writer.write_eof()
            except (ConnectionError, OSError, RuntimeError):
                pass

    def __repr__(self) -> str:
        return f"<MeteredStream read={self._bytes_read} written={self._bytes_written}>"

def wrap(
    reader: Optional[asyncio.StreamReader],
    writer: Optional[asyncio.StreamWriter]
) -> MeteredStream:
    """Wraps a stream pair in a fresh MeteredStream."""
    return MeteredStream(reader, writer)
