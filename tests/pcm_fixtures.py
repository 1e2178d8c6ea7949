"""Builders for synthetic PCM recordings used across the tests."""
from __future__ import annotations

import struct
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from agcpcm.pcm.config import RunConfig, RunParameters, dhms_to_seconds
from agcpcm.pcm.frames import FrameAttributes
from agcpcm.pcm.processing import ParameterSpec
from agcpcm.pcm.sources import AttributesTable, DataType, InMemoryPacketSource, Packet, SourceBundle
from agcpcm.pcm.timing import LinearTimeSync

SYNC_HEX = "FE6B2840"
SYNC = 0xFE6B2840
SYNC_LEN = 32
DATA_WORDS = 3
BITS_PER_FRAME = DATA_WORDS * 16 + SYNC_LEN
BIT_RATE = 1000.0  # one bit per millisecond
BIT_TICKS = 10_000
TIME_CHANNEL = 1
PCM_CHANNEL = 3
YEAR = 2024
FILE_START = dhms_to_seconds(100, 12, 0, 0, YEAR)


def int_bits(value: int, length: int) -> List[int]:
    return [(value >> (length - 1 - idx)) & 1 for idx in range(length)]


def sync_bits() -> List[int]:
    return int_bits(SYNC, SYNC_LEN)


def frame_bits(words: Sequence[int]) -> List[int]:
    bits = sync_bits()
    for word in words:
        bits.extend(int_bits(word, 16))
    return bits


def word_sets(count: int) -> List[List[int]]:
    # small values never contain the sync pattern
    return [[idx, 50 + idx, 100 + idx] for idx in range(count)]


def stream_bits(words: Iterable[Sequence[int]], trailing_sync: bool = True) -> List[int]:
    bits: List[int] = []
    for item in words:
        bits.extend(frame_bits(item))
    if trailing_sync:
        bits.extend(sync_bits())
    return bits


def pack_bits(bits: Sequence[int]) -> bytes:
    return np.packbits(np.asarray(bits, dtype=np.uint8)).tobytes()


def frame_offset_seconds(index: int) -> float:
    """Time of frame ``index`` relative to the first PCM bit."""
    return (index * BITS_PER_FRAME + SYNC_LEN) / BIT_RATE


def attributes(**changes) -> FrameAttributes:
    attrs = FrameAttributes.from_layout(SYNC_HEX, DATA_WORDS, BIT_RATE)
    return attrs.with_overrides(**changes)


def decode_time(packet: Packet) -> float:
    return struct.unpack(">d", packet.payload)[0]


def tmats_packet() -> Packet:
    return Packet(channel_id=0, data_type=DataType.TMATS, payload=b"G\\DSI\\N:1;", relative_time=0)


def time_packet(seconds: float, relative_time: int = 0, channel: int = TIME_CHANNEL) -> Packet:
    return Packet(channel_id=channel, data_type=DataType.TIME, payload=struct.pack(">d", seconds), relative_time=relative_time)


def pcm_packets(payload: bytes, chunk: int = 10, channel: int = PCM_CHANNEL, start_tick: int = 0) -> List[Packet]:
    packets = []
    for offset in range(0, len(payload), chunk):
        packets.append(
            Packet(
                channel_id=channel,
                data_type=DataType.PCM,
                payload=payload[offset : offset + chunk],
                relative_time=start_tick + offset * 8 * BIT_TICKS,
            )
        )
    return packets


def recording(payload: bytes, chunk: int = 10, file_start: float = FILE_START) -> List[Packet]:
    return [tmats_packet(), time_packet(file_start), *pcm_packets(payload, chunk)]


def build_bundle(
    packets: Sequence[Packet],
    table: Optional[Dict[int, FrameAttributes]] = None,
) -> SourceBundle:
    return SourceBundle(
        source=InMemoryPacketSource(packets),
        resolver=AttributesTable(table if table is not None else {PCM_CHANNEL: attributes()}),
        time_sync=LinearTimeSync(decoder=decode_time),
    )


def parameters() -> List[ParameterSpec]:
    return [ParameterSpec(name=f"W{idx + 1}", word=idx) for idx in range(DATA_WORDS)]


def run_parameters(output: Path, **changes) -> RunParameters:
    values = dict(
        parameters=parameters(),
        output_csv=output,
        time_channel=TIME_CHANNEL,
        pcm_channel=PCM_CHANNEL,
        frame_sync=SYNC,
        sync_length=SYNC_LEN,
        start_seconds=float(FILE_START),
        stop_seconds=float(FILE_START + 3600),
        sample_rate=1.0,
    )
    values.update(changes)
    return RunParameters(**values)


def make_bundle(cfg: RunConfig) -> SourceBundle:
    """Source factory used by the CLI tests: thirty clear frames on channel 3."""
    payload = pack_bits(stream_bits(word_sets(30)))
    return build_bundle(recording(payload, chunk=7))


def make_empty_bundle(cfg: RunConfig) -> SourceBundle:
    payload = bytes(64)
    return build_bundle(recording(payload))
