from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Protocol, Tuple, runtime_checkable

if TYPE_CHECKING:
    from .sources import Packet

logger = logging.getLogger(__name__)

TICKS_PER_SECOND = 10_000_000


@runtime_checkable
class TimeSync(Protocol):
    def relative_to_absolute(self, relative_time: int) -> Tuple[int, int]: ...

    def update_reference(self, packet: "Packet") -> None: ...


class LinearTimeSync:
    """
    Maps the 10 MHz relative time counter onto absolute time.

    The reference is a ``(relative_ticks, absolute_seconds)`` pair refreshed
    from every time packet on the selected time channel through ``decoder``.
    Until a reference exists the counter is read as ticks since the epoch.
    """

    def __init__(
        self,
        decoder: Optional[Callable[["Packet"], float]] = None,
        reference: Optional[Tuple[int, float]] = None,
    ):
        self._decoder = decoder
        self._reference: Optional[Tuple[int, int]] = None
        if reference is not None:
            self.set_reference(*reference)

    def set_reference(self, relative_time: int, absolute_seconds: float) -> None:
        whole = int(absolute_seconds)
        fraction = int(round((absolute_seconds - whole) * TICKS_PER_SECOND))
        self._reference = (int(relative_time), whole * TICKS_PER_SECOND + fraction)

    def update_reference(self, packet: "Packet") -> None:
        if self._decoder is None:
            return
        absolute = self._decoder(packet)
        if self._reference is None:
            logger.debug("Time reference acquired on channel %d: %.3f s", packet.channel_id, absolute)
        self.set_reference(packet.relative_time, absolute)

    def relative_to_absolute(self, relative_time: int) -> Tuple[int, int]:
        """Return ``(seconds, fraction)`` with the fraction in 100 ns units."""
        if self._reference is None:
            absolute = int(relative_time)
        else:
            ref_relative, ref_absolute = self._reference
            absolute = ref_absolute + (int(relative_time) - ref_relative)
        seconds, fraction = divmod(absolute, TICKS_PER_SECOND)
        return seconds, fraction


@dataclass(frozen=True)
class TimeAnchor:
    base_time: int
    start_bit: int
    bit_count: int


class TimeCorrelator:
    """
    Turns a frame's sync position in the concatenated PCM bitstream into an
    absolute time.

    Anchors for the current and the previous PCM packet are kept because the
    sync closing a frame can land in a packet after the one where the frame
    started.
    """

    def __init__(self, time_sync: TimeSync, bit_duration: float, bits_per_frame: int):
        self.time_sync = time_sync
        self.bit_duration = bit_duration
        self.bits_per_frame = bits_per_frame
        self.current: Optional[TimeAnchor] = None
        self.previous: Optional[TimeAnchor] = None
        self._next_bit = 0

    @property
    def total_bits(self) -> int:
        return self._next_bit

    def begin_packet(self, relative_time: int, bit_count: int) -> int:
        """Register a PCM packet and return the global position of its first bit."""
        if self.current is not None:
            self.previous = self.current
        self.current = TimeAnchor(base_time=int(relative_time), start_bit=self._next_bit, bit_count=bit_count)
        self._next_bit += bit_count
        return self.current.start_bit

    def anchor_for(self, frame_start_bit: int) -> TimeAnchor:
        if self.current is None:
            raise RuntimeError("No PCM packet has been registered")
        if frame_start_bit >= self.current.start_bit or self.previous is None:
            return self.current
        return self.previous

    def frame_relative_time(self, sync_bit: int) -> int:
        frame_start = sync_bit + 1 - self.bits_per_frame
        anchor = self.anchor_for(frame_start)
        return anchor.base_time + int((frame_start - anchor.start_bit) * self.bit_duration)

    def frame_time(self, sync_bit: int) -> float:
        seconds, fraction = self.time_sync.relative_to_absolute(self.frame_relative_time(sync_bit))
        return 0.0000001 * fraction + seconds
