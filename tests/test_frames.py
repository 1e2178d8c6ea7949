from __future__ import annotations

import pytest

from agcpcm.pcm.errors import ConfigurationError
from agcpcm.pcm.frames import (
    FrameAttributes,
    FrameSynchronizer,
    SyncPhase,
    parse_sync_hex,
    swap_word_bytes,
    unpack_bits,
)

from pcm_fixtures import (
    BITS_PER_FRAME,
    SYNC,
    SYNC_LEN,
    attributes,
    frame_bits,
    stream_bits,
    sync_bits,
    word_sets,
)


def test_parse_sync_hex() -> None:
    assert parse_sync_hex("FE6B2840") == (0xFE6B2840, 32)
    assert parse_sync_hex(" eb90 ") == (0xEB90, 16)
    for bad in ("", "XYZ", "1" * 17):
        with pytest.raises(ConfigurationError):
            parse_sync_hex(bad)


def test_layout_derives_frame_geometry() -> None:
    attrs = FrameAttributes.from_layout("FE6B2840", 48, 2_000_000.0, min_syncs=2)
    assert attrs.sync_mask == 0xFFFFFFFF
    assert attrs.bits_per_frame == 48 * 16 + 32
    assert attrs.bit_duration == pytest.approx(5.0)
    assert attrs.word_mask == 0xFFFF
    assert attrs.min_syncs == 2


def test_validate_rejects_sync_longer_than_frame() -> None:
    attrs = attributes()
    with pytest.raises(ConfigurationError):
        attrs.with_overrides(bits_per_frame=16).validate()
    with pytest.raises(ConfigurationError):
        attrs.with_overrides(words_per_frame=0).validate()
    with pytest.raises(ConfigurationError):
        attrs.with_overrides(word_length=12).validate()


def test_with_sync_resets_mask() -> None:
    attrs = attributes().with_sync(0xEB90, 16)
    assert attrs.sync_mask == 0xFFFF
    assert attrs.sync_length == 16


def test_extracts_every_complete_frame() -> None:
    sets = word_sets(5)
    sync = FrameSynchronizer(attributes())
    frames = sync.process(stream_bits(sets), 0)
    assert [list(frame.words) for frame in frames] == sets
    assert [frame.sync_bit for frame in frames] == [
        (idx + 1) * BITS_PER_FRAME + SYNC_LEN - 1 for idx in range(5)
    ]
    assert sync.stats() == {"syncs": 6, "frames": 5, "lock_losses": 0}
    assert sync.lock_count == 5


def test_min_syncs_delays_first_frame() -> None:
    sets = word_sets(5)
    sync = FrameSynchronizer(attributes(min_syncs=3))
    frames = sync.process(stream_bits(sets), 0)
    # lock reaches 3 on the fourth sync
    assert [list(frame.words) for frame in frames] == sets[2:]


def test_words_collected_before_lock_are_not_emitted() -> None:
    # leading junk puts the first sync exactly one frame length into the stream
    bits = [0] * (BITS_PER_FRAME - SYNC_LEN) + stream_bits(word_sets(2))
    sync = FrameSynchronizer(attributes())
    frames = sync.process(bits, 0)
    assert [list(frame.words) for frame in frames] == word_sets(2)


def test_misplaced_sync_drops_lock() -> None:
    sets = word_sets(3)
    bits = frame_bits(sets[0]) + frame_bits(sets[1]) + [0] * 8 + frame_bits(sets[2]) + sync_bits()
    sync = FrameSynchronizer(attributes())
    frames = sync.process(bits, 0)
    assert [list(frame.words) for frame in frames] == [sets[0], sets[2]]
    assert sync.stats()["lock_losses"] == 1
    assert sync.stats()["syncs"] == 4


def test_state_carries_across_blocks() -> None:
    bits = stream_bits(word_sets(6))
    sync = FrameSynchronizer(attributes())
    frames = []
    position = 0
    for size in (13, 50, 7, 200, 1, 99, 1000):
        block = bits[position : position + size]
        frames.extend(sync.process(block, position))
        position += len(block)
    whole = FrameSynchronizer(attributes()).process(bits, 0)
    assert frames == whole
    assert len(frames) == 6


def test_phase_transitions() -> None:
    sync = FrameSynchronizer(attributes())
    assert sync.phase is SyncPhase.WAITING
    sync.process(sync_bits(), 0)
    assert sync.phase is SyncPhase.COLLECTING
    sync.process([0] * 48, SYNC_LEN)
    assert sync.phase is SyncPhase.READY
    sync.reset()
    assert sync.phase is SyncPhase.WAITING
    assert sync.lock_count == -1


def test_no_sync_means_no_frames() -> None:
    sync = FrameSynchronizer(attributes())
    assert sync.process([0, 1] * 500, 0) == []
    assert sync.stats()["syncs"] == 0


def test_swap_word_bytes_keeps_odd_tail() -> None:
    assert swap_word_bytes(b"\x01\x02\x03\x04\x05") == b"\x02\x01\x04\x03\x05"
    assert swap_word_bytes(b"") == b""


def test_unpack_bits_is_msb_first() -> None:
    assert unpack_bits(b"\xa0").tolist() == [1, 0, 1, 0, 0, 0, 0, 0]
    assert unpack_bits(SYNC.to_bytes(4, "big")).tolist() == sync_bits()
