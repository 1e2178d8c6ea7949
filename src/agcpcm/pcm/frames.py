from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, replace
from typing import Dict, List, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError
from .timing import TICKS_PER_SECOND

COMMON_WORD_LEN = 16
MAX_CHANNEL_ID = 0xFFFF
MAX_SYNC_BITS = 64
DEFAULT_FRAME_SYNC = "FE6B2840"

_HEX_PATTERN = re.compile(r"^[0-9A-Fa-f]+$")
_REGISTER_MASK = (1 << MAX_SYNC_BITS) - 1


def parse_sync_hex(text: str) -> Tuple[int, int]:
    """Return ``(pattern, bit_length)`` for a hex frame sync such as ``FE6B2840``."""
    value = (text or "").strip()
    if not value:
        raise ConfigurationError("Frame sync pattern is empty.")
    if not _HEX_PATTERN.match(value):
        raise ConfigurationError(f"Invalid frame sync '{value}'.")
    length = len(value) * 4
    if length > MAX_SYNC_BITS:
        raise ConfigurationError(f"Frame sync '{value}' is longer than {MAX_SYNC_BITS} bits.")
    return int(value, 16), length


@dataclass(frozen=True)
class FrameAttributes:
    sync_pattern: int
    sync_mask: int
    sync_length: int
    word_length: int
    words_per_frame: int
    bits_per_frame: int
    bit_duration: float  # 100 ns units per bit
    byte_swap: bool = False
    min_syncs: int = 0

    @classmethod
    def from_layout(
        cls,
        frame_sync: str,
        data_words: int,
        bit_rate: float,
        *,
        min_syncs: int = 0,
        byte_swap: bool = False,
    ) -> "FrameAttributes":
        """
        Build attributes for a minor frame made of one sync marker followed by
        ``data_words`` 16-bit words.
        """
        pattern, length = parse_sync_hex(frame_sync)
        if bit_rate <= 0:
            raise ConfigurationError("Bit rate must be a positive number.")
        attrs = cls(
            sync_pattern=pattern,
            sync_mask=(1 << length) - 1,
            sync_length=length,
            word_length=COMMON_WORD_LEN,
            words_per_frame=data_words,
            bits_per_frame=data_words * COMMON_WORD_LEN + length,
            bit_duration=TICKS_PER_SECOND / float(bit_rate),
            byte_swap=byte_swap,
            min_syncs=min_syncs,
        )
        attrs.validate()
        return attrs

    def with_sync(self, pattern: int, length: int) -> "FrameAttributes":
        return replace(self, sync_pattern=pattern, sync_length=length, sync_mask=(1 << length) - 1)

    def with_overrides(self, **changes) -> "FrameAttributes":
        return replace(self, **{key: value for key, value in changes.items() if value is not None})

    @property
    def word_mask(self) -> int:
        return (1 << self.word_length) - 1

    def validate(self) -> None:
        if self.words_per_frame <= 0:
            raise ConfigurationError("Frame must contain at least one data word.")
        if self.word_length != COMMON_WORD_LEN:
            raise ConfigurationError(
                f"Only {COMMON_WORD_LEN}-bit words are supported (got {self.word_length})."
            )
        if not 1 <= self.sync_length <= min(self.bits_per_frame, MAX_SYNC_BITS):
            raise ConfigurationError(
                f"Frame sync pattern ({self.sync_length} bits) exceeds frame length "
                f"({self.bits_per_frame} bits)."
            )
        if self.sync_pattern & ~self.sync_mask:
            raise ConfigurationError("Frame sync pattern has bits outside its mask.")
        if self.bit_duration <= 0:
            raise ConfigurationError("Bit duration must be positive.")
        if self.min_syncs < 0:
            raise ConfigurationError("min_syncs may not be negative.")


@dataclass(frozen=True)
class Frame:
    sync_bit: int  # global position of the last sync bit
    words: Tuple[int, ...]


class SyncPhase(str, enum.Enum):
    WAITING = "waiting"
    COLLECTING = "collecting"
    READY = "ready"


def unpack_bits(payload: bytes) -> np.ndarray:
    """MSB-first bit array for ``payload``."""
    return np.unpackbits(np.frombuffer(payload, dtype=np.uint8))


def swap_word_bytes(payload: bytes) -> bytes:
    """Swap the two bytes of every 16-bit word; a trailing odd byte is kept."""
    data = np.frombuffer(payload, dtype=np.uint8).copy()
    even = data.size - (data.size % 2)
    pairs = data[:even].reshape(-1, 2)
    data[:even] = pairs[:, ::-1].reshape(-1)
    return data.tobytes()


class FrameSynchronizer:
    """
    Bit-serial minor frame synchronizer.

    Syncs must repeat exactly ``bits_per_frame`` bits apart. A frame is handed
    out on a correctly spaced sync once ``min_syncs`` consecutive spacings have
    been seen and the word set collected since the previous sync is complete.
    """

    def __init__(self, attributes: FrameAttributes):
        attributes.validate()
        self.attributes = attributes
        self._log = logging.getLogger(__name__)
        self._words: List[int] = [0] * attributes.words_per_frame
        self.reset()

    def reset(self) -> None:
        self._register = 0
        self._bits_loaded = 0
        self._frame_bit_count = 0
        self._word_index = 0
        self._word_bit_count = 0
        self._phase = SyncPhase.WAITING
        self._lock_count = -1
        self._stats: Dict[str, int] = {"syncs": 0, "frames": 0, "lock_losses": 0}
        for idx in range(len(self._words)):
            self._words[idx] = 0

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def lock_count(self) -> int:
        return self._lock_count

    def process(self, bits: Sequence[int], start_bit: int) -> List[Frame]:
        """
        Feed ``bits`` whose first element sits at global position ``start_bit``
        and return the frames completed while scanning them.
        """
        attrs = self.attributes
        pattern = attrs.sync_pattern
        mask = attrs.sync_mask
        sync_len = attrs.sync_length
        bits_per_frame = attrs.bits_per_frame
        word_len = attrs.word_length
        word_mask = attrs.word_mask
        words_per_frame = attrs.words_per_frame
        min_syncs = attrs.min_syncs
        words = self._words

        register = self._register
        bits_loaded = self._bits_loaded
        frame_bits = self._frame_bit_count
        word_index = self._word_index
        word_bits = self._word_bit_count
        phase = self._phase
        lock_count = self._lock_count
        syncs = 0
        losses = 0
        frames: List[Frame] = []

        for offset, bit in enumerate(bits):
            register = ((register << 1) | bit) & _REGISTER_MASK
            bits_loaded += 1
            frame_bits += 1

            if bits_loaded >= sync_len and (register & mask) == pattern:
                syncs += 1
                if frame_bits == bits_per_frame:
                    lock_count += 1
                    if lock_count >= min_syncs and phase is SyncPhase.READY:
                        frames.append(Frame(sync_bit=start_bit + offset, words=tuple(words)))
                else:
                    if lock_count >= 0:
                        losses += 1
                    lock_count = 0
                frame_bits = 0
                word_index = 0
                word_bits = 0
                phase = SyncPhase.COLLECTING
                continue

            if phase is SyncPhase.COLLECTING:
                word_bits += 1
                if word_bits >= word_len:
                    if word_index < words_per_frame:
                        words[word_index] = register & word_mask
                    word_bits = 0
                    word_index += 1
                if word_index >= words_per_frame:
                    phase = SyncPhase.READY

        self._register = register
        self._bits_loaded = bits_loaded
        self._frame_bit_count = frame_bits
        self._word_index = word_index
        self._word_bit_count = word_bits
        self._phase = phase
        self._lock_count = lock_count
        self._stats["syncs"] += syncs
        self._stats["frames"] += len(frames)
        self._stats["lock_losses"] += losses
        if losses:
            self._log.debug("Frame lock lost %d time(s) near bit %d", losses, start_bit)
        return frames

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)
