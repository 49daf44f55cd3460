"""
Order-independent frame reassembly.

Fragments of a frame may arrive in any order and some may never arrive.
A fixed arena of ASSEMBLY_SLOTS buffers, indexed by ``frame_id % slots``,
bounds memory regardless of the loss pattern.
"""

import logging
import time

from config import (
    ASSEMBLY_SLOTS,
    COMPLETENESS_THRESHOLD,
    FRAME_TIMEOUT,
    REORDER_WINDOW,
    STALE_WINDOW,
)
from transport.protocol import PacketHeader

logger = logging.getLogger(__name__)


class FrameAssemblyBuffer:
    """Accumulates the fragments of one frame until it is finalized."""

    def __init__(self, frame_id: int, total_parts: int, created_at: float | None = None):
        self.frame_id = frame_id
        self.total_parts = total_parts
        self.parts: list[bytes | None] = [None] * total_parts
        self.received_count = 0
        self.created_at = time.monotonic() if created_at is None else created_at
        self.finalized = False

    def add_part(self, part_index: int, data: bytes) -> bool:
        """Store a fragment. Returns False for duplicates and out-of-range indexes."""
        if self.finalized or not 0 <= part_index < self.total_parts:
            return False
        if self.parts[part_index] is not None:
            return False
        self.parts[part_index] = data
        self.received_count += 1
        return True

    @property
    def completeness(self) -> float:
        return self.received_count / self.total_parts

    def is_ready(self, threshold: float) -> bool:
        return not self.finalized and self.completeness >= threshold

    def assemble(self) -> bytes:
        """Concatenate parts in index order; missing parts contribute nothing."""
        if self.finalized:
            raise RuntimeError(f"Frame {self.frame_id} already finalized")
        self.finalized = True
        return b"".join(part for part in self.parts if part is not None)

    def age(self, now: float) -> float:
        return now - self.created_at


class AssemblyTable:
    """Fixed arena of assembly buffers keyed by ``frame_id % slots``."""

    def __init__(self, slots: int = ASSEMBLY_SLOTS) -> None:
        self._slots: list[FrameAssemblyBuffer | None] = [None] * slots

    def __len__(self) -> int:
        return sum(1 for buf in self._slots if buf is not None)

    def __contains__(self, frame_id: int) -> bool:
        return self.get(frame_id) is not None

    def frame_ids(self) -> list[int]:
        return sorted(buf.frame_id for buf in self._slots if buf is not None)

    def get(self, frame_id: int) -> FrameAssemblyBuffer | None:
        buf = self._slots[frame_id % len(self._slots)]
        if buf is not None and buf.frame_id == frame_id:
            return buf
        return None

    def get_or_create(
        self, frame_id: int, total_parts: int, now: float
    ) -> FrameAssemblyBuffer | None:
        """
        Return the buffer for *frame_id*, creating it if needed.

        An older frame occupying the slot is evicted. Returns None when the
        slot holds a newer frame, in which case the fragment is dropped.
        """
        index = frame_id % len(self._slots)
        occupant = self._slots[index]
        if occupant is not None:
            if occupant.frame_id == frame_id:
                return occupant
            if occupant.frame_id > frame_id:
                return None
            logger.debug(f"Evicting frame {occupant.frame_id} for frame {frame_id}")
        buf = FrameAssemblyBuffer(frame_id, total_parts, created_at=now)
        self._slots[index] = buf
        return buf

    def remove(self, frame_id: int) -> None:
        index = frame_id % len(self._slots)
        occupant = self._slots[index]
        if occupant is not None and occupant.frame_id == frame_id:
            self._slots[index] = None

    def expire(self, now: float, max_age: float) -> int:
        """Drop buffers older than *max_age* seconds. Returns how many were dropped."""
        dropped = 0
        for index, buf in enumerate(self._slots):
            if buf is not None and buf.age(now) > max_age:
                self._slots[index] = None
                dropped += 1
        return dropped

    def clear(self) -> None:
        self._slots = [None] * len(self._slots)


class FrameReassembler:
    """
    Receiver-side state: assembly table plus the monotonicity baseline.

    ``accept()`` returns the assembled bytes when a fragment completes a
    frame, otherwise None.
    """

    def __init__(
        self,
        completeness_threshold: float = COMPLETENESS_THRESHOLD,
        slots: int = ASSEMBLY_SLOTS,
        frame_timeout: float = FRAME_TIMEOUT,
        reorder_window: int = REORDER_WINDOW,
        stale_window: int = STALE_WINDOW,
    ) -> None:
        if not 0.0 < completeness_threshold <= 1.0:
            raise ValueError("completeness_threshold must be in (0, 1]")
        self.completeness_threshold = completeness_threshold
        self.frame_timeout = frame_timeout
        self.reorder_window = reorder_window
        self.stale_window = stale_window
        self.table = AssemblyTable(slots)
        self.last_completed_id = -1

    def reset(self) -> None:
        self.table.clear()
        self.last_completed_id = -1

    def is_stale(self, frame_id: int) -> bool:
        baseline = self.last_completed_id
        return baseline != -1 and frame_id <= baseline and (baseline - frame_id) < self.stale_window

    def accept(self, header: PacketHeader, payload: bytes, now: float | None = None) -> bytes | None:
        now = time.monotonic() if now is None else now
        frame_id = header.frame_id

        # Sender restarted or wrapped its counter
        if self.last_completed_id != -1 and frame_id + self.reorder_window < self.last_completed_id:
            logger.debug(
                f"Frame ID jumped backwards ({frame_id} < {self.last_completed_id}), resetting"
            )
            self.reset()

        if self.is_stale(frame_id):
            return None

        buf = self.table.get_or_create(frame_id, header.total_parts, now)
        if buf is None or buf.total_parts != header.total_parts:
            return None

        if not buf.add_part(header.part_index, payload):
            return None
        if not buf.is_ready(self.completeness_threshold):
            return None

        frame = buf.assemble()
        self.table.remove(frame_id)
        self.last_completed_id = frame_id
        return frame

    def expire(self, now: float | None = None) -> int:
        now = time.monotonic() if now is None else now
        return self.table.expire(now, self.frame_timeout)
