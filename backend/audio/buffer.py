# backend/audio/buffer.py
"""
Bounded, non-blocking audio frame buffer between transport and segmenter.

Rules:
- push never blocks; it raises BufferOverflow when a cap would be exceeded
- Drop policy is the caller's choice: make_room evicts OLDEST frames so
  the freshest audio survives (no latency buildup)
- End-of-utterance markers travel in-band, never count toward caps and
  are never evicted
- drain() yields items in arrival order; consumed items leave the backlog
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Deque, Union

from audio.frames import AudioFrame, EndOfUtteranceMarker, EndReason
from errors import BufferOverflow

BufferItem = Union[AudioFrame, EndOfUtteranceMarker]


@dataclass
class DropCounters:
    """
    Drop counters for observability.

    rejected: push attempts refused by a cap
    evicted: oldest frames discarded by make_room
    """
    rejected: int = 0
    evicted: int = 0


class AudioFrameBuffer:
    """
    Bounded FIFO of inbound frames, capped by frame count AND byte size.

    Single producer (gateway), single consumer (segmenter).
    """

    def __init__(self, *, max_frames: int, max_bytes: int) -> None:
        if max_frames <= 0:
            raise ValueError("max_frames must be > 0")
        if max_bytes <= 0:
            raise ValueError("max_bytes must be > 0")

        self._max_frames = max_frames
        self._max_bytes = max_bytes
        self._items: Deque[BufferItem] = deque()
        self._frame_count = 0
        self._byte_count = 0
        self._available = asyncio.Event()
        self._closed = False
        self.drops: DropCounters = DropCounters()

    # -------------------------
    # Producer side
    # -------------------------

    def push(self, frame: AudioFrame) -> None:
        """
        Append a frame to the backlog.

        Raises:
            BufferOverflow if the frame would exceed max_frames or
            max_bytes. The frame is not enqueued.
        """
        if not self._fits(len(frame.pcm_bytes)):
            self.drops.rejected += 1
            raise BufferOverflow(
                backlog_frames=self._frame_count,
                backlog_bytes=self._byte_count,
                max_frames=self._max_frames,
                max_bytes=self._max_bytes,
            )

        self._items.append(frame)
        self._frame_count += 1
        self._byte_count += len(frame.pcm_bytes)
        self._available.set()

    def make_room(self, frame: AudioFrame) -> int:
        """
        Evict the oldest frames until `frame` fits. A frame larger than
        max_bytes can never fit and evicts nothing.

        Returns:
            Number of frames evicted.
        """
        if len(frame.pcm_bytes) > self._max_bytes:
            return 0
        evicted = 0
        while self._frame_count > 0 and not self._fits(len(frame.pcm_bytes)):
            self._evict_oldest_frame()
            evicted += 1
        self.drops.evicted += evicted
        return evicted

    def push_end_of_utterance(
        self,
        ts_ms: int,
        reason: EndReason = EndReason.CLIENT,
    ) -> None:
        """Enqueue an end-of-utterance marker behind the current backlog."""
        self._items.append(EndOfUtteranceMarker(ts_ms=ts_ms, reason=reason))
        self._available.set()

    def close(self) -> None:
        """Stop drain() once the remaining backlog is consumed."""
        self._closed = True
        self._available.set()

    # -------------------------
    # Consumer side
    # -------------------------

    async def drain(self) -> AsyncIterator[BufferItem]:
        """
        Yield buffered items in arrival order, waiting for new ones.

        Lazy and restartable: a new call resumes from the current backlog.
        Ends after close().
        """
        while True:
            while self._items:
                item = self._items.popleft()
                if isinstance(item, AudioFrame):
                    self._frame_count -= 1
                    self._byte_count -= len(item.pcm_bytes)
                yield item

            if self._closed:
                return

            self._available.clear()
            await self._available.wait()

    # -------------------------
    # Internals
    # -------------------------

    def _fits(self, num_bytes: int) -> bool:
        return (
            self._frame_count + 1 <= self._max_frames
            and self._byte_count + num_bytes <= self._max_bytes
        )

    def _evict_oldest_frame(self) -> None:
        for idx, item in enumerate(self._items):
            if isinstance(item, AudioFrame):
                del self._items[idx]
                self._frame_count -= 1
                self._byte_count -= len(item.pcm_bytes)
                return

    # -------------------------
    # Introspection helpers
    # -------------------------

    def __len__(self) -> int:
        return self._frame_count

    @property
    def closed(self) -> bool:
        return self._closed

    def backlog_bytes(self) -> int:
        """Unconsumed PCM bytes."""
        return self._byte_count

    def depth_seconds(self) -> float:
        """Unconsumed audio duration in seconds."""
        return sum(
            item.duration_ms for item in self._items
            if isinstance(item, AudioFrame)
        ) / 1000.0

    def total_drops(self) -> int:
        """Total frames dropped for any reason."""
        return self.drops.rejected + self.drops.evicted

    def snapshot(self) -> dict[str, float | int]:
        """
        Lightweight snapshot for logging / metrics.
        """
        return {
            "frames": self._frame_count,
            "bytes": self._byte_count,
            "depth_s": self.depth_seconds(),
            "dropped_rejected": self.drops.rejected,
            "dropped_evicted": self.drops.evicted,
            "dropped_total": self.total_drops(),
        }
