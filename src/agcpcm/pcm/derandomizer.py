"""
Self-synchronizing descrambler for randomized (RNRZ-L) PCM streams.

The randomizer is a 15-bit shift register with feedback taps at register
bits 13 and 14. Because the descrambler only depends on received bits, a
block can be processed in one numpy expression:

    out[i] = in[i] ^ in[i - 14] ^ in[i - 15]

where the fifteen bits preceding the block come from the carried register.
"""
from __future__ import annotations

from typing import Iterable, Tuple

import numpy as np

LFSR_BITS = 15
LFSR_MASK = (1 << LFSR_BITS) - 1
TAP_NEAR = 13
TAP_FAR = 14


def _state_to_history(state: int) -> np.ndarray:
    # oldest bit first: register bit 14 was received first
    return np.array(
        [(state >> (LFSR_BITS - 1 - idx)) & 1 for idx in range(LFSR_BITS)], dtype=np.uint8
    )


def _history_to_state(history: np.ndarray) -> int:
    state = 0
    for bit in history[-LFSR_BITS:].tolist():
        state = ((state << 1) | int(bit)) & LFSR_MASK
    return state


class Derandomizer:
    """Descrambles bit blocks, carrying the register across calls within a run."""

    def __init__(self, state: int = 0):
        self.state = state & LFSR_MASK

    def process(self, bits: Iterable[int]) -> np.ndarray:
        received = np.asarray(bits, dtype=np.uint8)
        if received.size == 0:
            return received.copy()
        stream = np.concatenate([_state_to_history(self.state), received])
        count = received.size
        descrambled = received ^ stream[1 : count + 1] ^ stream[:count]
        self.state = _history_to_state(stream)
        return descrambled

    def process_bytes(self, payload: bytes) -> bytes:
        bits = np.unpackbits(np.frombuffer(payload, dtype=np.uint8))
        return np.packbits(self.process(bits)).tobytes()


def scramble_bits(bits: Iterable[int], state: int = 0) -> Tuple[np.ndarray, int]:
    """Randomize ``bits``; the inverse of :meth:`Derandomizer.process` for the same state."""
    clear = np.asarray(bits, dtype=np.uint8)
    out = np.zeros_like(clear)
    register = state & LFSR_MASK
    for idx, bit in enumerate(clear.tolist()):
        sent = bit ^ ((register >> TAP_NEAR) & 1) ^ ((register >> TAP_FAR) & 1)
        register = ((register << 1) | sent) & LFSR_MASK
        out[idx] = sent
    return out, register


def has_sync_pattern(bits: Iterable[int], pattern: int, mask: int, length: int) -> bool:
    test_word = 0
    loaded = 0
    for bit in bits:
        test_word = (test_word << 1 | int(bit)) & 0xFFFFFFFFFFFFFFFF
        loaded += 1
        if loaded >= length and (test_word & mask) == pattern:
            return True
    return False


class DerandomizationGate:
    """
    Makes the one-time randomization decision on the first PCM block of a run.

    If the sync pattern is visible in the raw bits the stream is left alone for
    the whole run; otherwise every block, starting with the first one, goes
    through the descrambler.
    """

    def __init__(self, pattern: int, mask: int, length: int):
        self._pattern = pattern
        self._mask = mask
        self._length = length
        self._derandomizer = Derandomizer()
        self.decided = False
        self.enabled = False

    def apply(self, bits: np.ndarray) -> np.ndarray:
        if not self.decided:
            self.decided = True
            self.enabled = not has_sync_pattern(bits.tolist(), self._pattern, self._mask, self._length)
        if self.enabled:
            return self._derandomizer.process(bits)
        return bits
