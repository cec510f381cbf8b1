#Filename: relay.py
"""
RELAY ENGINE
Concurrent bidirectional copy between two metered endpoints.

One task copies A -> B while the caller copies B -> A; relay() returns
only after both directions have finished, so the reported totals are
final. The engine never closes a connection: the handler that dialed a
connection owns it. A finished direction half-closes its destination
so the peer sees end-of-stream while the other direction keeps flowing.
"""

import asyncio
import logging
from typing import Tuple

from metered import MeteredStream
from structures import RELAY_CHUNK_SIZE

log = logging.getLogger(__name__)

# Mid-relay faults that end one direction only
TRANSFER_ERRORS = (ConnectionError, OSError, asyncio.IncompleteReadError)

async def copy(src: MeteredStream, dst: MeteredStream, label: str = "") -> int:
    """
    Copies src into dst until src reaches end-of-stream or either side fails.
    Returns the number of bytes written to dst by this call.
    """
    start = dst.bytes_written
    try:
        while True:
            data = await src.read(RELAY_CHUNK_SIZE)
            if not data:
                break
            await dst.write(data)
    except TRANSFER_ERRORS as e:
        log.debug("Relay direction %s stopped: %r", label or "?", e)
    finally:
        dst.write_eof()
    return dst.bytes_written - start

async def relay(a: MeteredStream, b: MeteredStream) -> Tuple[int, int]:
    """
    Relays bytes between a and b in both directions.
    Returns (bytes_a_to_b, bytes_b_to_a) once both directions completed.
    """
    forward = asyncio.create_task(copy(a, b, "a->b"))
    try:
        await copy(b, a, "b->a")
        await forward
    finally:
        if not forward.done():
            forward.cancel()
            await asyncio.gather(forward, return_exceptions=True)
    return b.bytes_written, a.bytes_written
