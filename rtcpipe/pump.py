"""Moves bytes between local streams and an open data channel.

Two directions run side by side. Drain copies every inbound message to the
sink. Fill reads the source in CHUNK_SIZE pieces and writes them to the
channel, but only while the channel's buffered amount is at or below the
low water mark; above it, fill sleeps until the channel reports that the
buffer drained. An empty message marks the end of a direction.
"""

from __future__ import annotations
import asyncio
import logging
from typing import BinaryIO

from .config import CHUNK_SIZE, FLUSH_POLL_INTERVAL
from .dial import Conn
from .errors import ShortWrite, WriteError

logger = logging.getLogger(__name__)

EOF_MARKER = b""


class Pipe:
    def __init__(self, conn: Conn, source: BinaryIO, sink: BinaryIO,
                 chunk_size: int = CHUNK_SIZE,
                 poll_interval: float = FLUSH_POLL_INTERVAL) -> None:
        self.conn = conn
        self.source = source
        self.sink = sink
        self.chunk_size = chunk_size
        self.poll_interval = poll_interval
        self.sent = 0
        self.received = 0

    async def run(self) -> None:
        """Pump both directions; return once both have finished."""
        await asyncio.gather(self.fill(), self.drain())
        logger.debug("pipe done: tx %d rx %d", self.sent, self.received)

    async def drain(self) -> int:
        """Copy the remote side's bytes to the sink."""
        loop = asyncio.get_running_loop()
        try:
            while True:
                data = await self.conn.inbox.get()
                if not data:
                    break
                await loop.run_in_executor(None, self._write_sink, data)
                self.received += len(data)
        except OSError as e:
            logger.error("could not write to sink: %s", e)
        return self.received

    def _write_sink(self, data: bytes) -> None:
        self.sink.write(data)
        self.sink.flush()

    async def fill(self) -> int:
        """Copy the source to the channel, honouring the low water mark."""
        loop = asyncio.get_running_loop()
        channel = self.conn.channel
        try:
            while True:
                await self._wait_flushed()
                chunk = await loop.run_in_executor(None, self.source.read, self.chunk_size)
                if not chunk:
                    break
                written = channel.send(chunk)
                self.sent += written
                if written != len(chunk):
                    raise ShortWrite(f"wrote {written} of {len(chunk)} bytes")
            channel.send(EOF_MARKER)
        except WriteError as e:
            logger.error("could not write to channel: %s", e)
        except OSError as e:
            logger.error("could not read from source: %s", e)
        return self.sent

    async def _wait_flushed(self) -> None:
        channel = self.conn.channel
        async with self.conn.flushc:
            while channel.buffered_amount > channel.buffered_amount_low_threshold:
                if self.conn.closed:
                    raise WriteError("channel closed")
                await self.conn.flushc.wait()

    async def close(self) -> None:
        """Let the channel flush, then close it and the peer connection."""
        channel = self.conn.channel
        while channel.buffered_amount != 0:
            logger.debug("buffer has %d bytes", channel.buffered_amount)
            await asyncio.sleep(self.poll_interval)
        channel.close()
        await self.conn.pc.close()
