from __future__ import annotations

import numpy as np

from agcpcm.pcm.derandomizer import (
    DerandomizationGate,
    Derandomizer,
    has_sync_pattern,
    scramble_bits,
)

from pcm_fixtures import SYNC, SYNC_LEN, pack_bits, stream_bits, word_sets


def _reference_descramble(bits, state=0):
    # register-level formulation, one bit at a time
    register = state
    out = []
    for bit in bits:
        out.append(bit ^ ((register >> 13) & 1) ^ ((register >> 14) & 1))
        register = ((register << 1) | bit) & 0x7FFF
    return out, register


def test_descrambles_scrambled_stream() -> None:
    clear = stream_bits(word_sets(8))
    scrambled, _ = scramble_bits(clear)
    assert scrambled.tolist() != clear
    assert Derandomizer().process(scrambled).tolist() == clear


def test_matches_register_formulation() -> None:
    rng = np.random.default_rng(7)
    bits = rng.integers(0, 2, size=500).tolist()
    expected, state = _reference_descramble(bits, state=0x1234)
    derandomizer = Derandomizer(state=0x1234)
    assert derandomizer.process(bits).tolist() == expected
    assert derandomizer.state == state


def test_register_carries_between_blocks() -> None:
    clear = stream_bits(word_sets(8))
    scrambled, _ = scramble_bits(clear)
    derandomizer = Derandomizer()
    pieces = [derandomizer.process(scrambled[start : start + 37]) for start in range(0, len(scrambled), 37)]
    assert np.concatenate(pieces).tolist() == clear


def test_process_bytes_round_trip() -> None:
    clear = stream_bits(word_sets(4))
    scrambled, _ = scramble_bits(clear)
    assert Derandomizer().process_bytes(pack_bits(scrambled)) == pack_bits(clear)


def test_has_sync_pattern() -> None:
    bits = [0] * 5 + [int(ch) for ch in format(SYNC, "032b")] + [1, 0]
    assert has_sync_pattern(bits, SYNC, 0xFFFFFFFF, SYNC_LEN)
    assert not has_sync_pattern(bits[:20], SYNC, 0xFFFFFFFF, SYNC_LEN)


def test_gate_leaves_clear_stream_alone() -> None:
    clear = np.asarray(stream_bits(word_sets(4)), dtype=np.uint8)
    scrambled, _ = scramble_bits(clear)
    gate = DerandomizationGate(SYNC, 0xFFFFFFFF, SYNC_LEN)
    assert gate.apply(clear).tolist() == clear.tolist()
    assert gate.decided and not gate.enabled
    # decision holds even when later data looks randomized
    assert gate.apply(scrambled).tolist() == scrambled.tolist()


def test_gate_descrambles_from_first_block() -> None:
    clear = stream_bits(word_sets(6))
    scrambled, _ = scramble_bits(clear)
    gate = DerandomizationGate(SYNC, 0xFFFFFFFF, SYNC_LEN)
    first = gate.apply(scrambled[:200])
    second = gate.apply(scrambled[200:])
    assert gate.enabled
    assert np.concatenate([first, second]).tolist() == clear
