"""
Outbound client record queue.

Bounded by the encoded size of the queued records rather than their
count: a long reply is many small reply_chunk records plus audio chunks,
so a count cap trips on a reader that is slow but still reading.

- None (end of stream) is always accepted and weighs nothing
- A record larger than the whole cap is accepted into an empty queue
- put_nowait raises asyncio.QueueFull past the cap; the runtime treats
  that as transport loss
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Deque, Optional

from protocol.messages import encode

OutboundRecord = Optional[dict[str, Any]]


def record_size(record: OutboundRecord) -> int:
    """Encoded wire size of a record, in bytes."""
    if record is None:
        return 0
    return len(encode(record).encode("utf-8"))


class OutboundQueue(asyncio.Queue[OutboundRecord]):
    """FIFO of client records capped by total encoded bytes."""

    def __init__(self, *, max_bytes: int) -> None:
        if max_bytes <= 0:
            raise ValueError("max_bytes must be > 0")
        super().__init__()
        self._max_bytes = max_bytes
        self._queued_bytes = 0
        self._sizes: Deque[int] = deque()

    @property
    def queued_bytes(self) -> int:
        return self._queued_bytes

    def put_nowait(self, item: OutboundRecord) -> None:
        size = record_size(item)
        if size and not self.empty() and self._queued_bytes + size > self._max_bytes:
            raise asyncio.QueueFull
        super().put_nowait(item)

    # asyncio.Queue storage hooks; every put and get goes through these

    def _put(self, item: OutboundRecord) -> None:
        size = record_size(item)
        super()._put(item)  # pyright: ignore[reportAttributeAccessIssue]
        self._sizes.append(size)
        self._queued_bytes += size

    def _get(self) -> OutboundRecord:
        item = super()._get()  # pyright: ignore[reportAttributeAccessIssue]
        self._queued_bytes -= self._sizes.popleft()
        return item
