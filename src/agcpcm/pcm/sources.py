"""
Contracts for the container-level collaborators of the extraction engine.

Reading Chapter 10 packets and decoding TMATS records happen outside this
package; the engine only relies on the protocols below. The in-memory
implementations back the tests and simple plugins that pre-decode a file.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import (
    Callable,
    Dict,
    Iterator,
    Mapping,
    NamedTuple,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from .errors import ParseError
from .frames import FrameAttributes
from .timing import TimeSync


class DataType(str, enum.Enum):
    TMATS = "tmats"
    TIME = "time"
    PCM = "pcm"
    OTHER = "other"


@dataclass(frozen=True)
class Packet:
    channel_id: int
    data_type: DataType
    payload: bytes
    relative_time: int  # 10 MHz relative time counter

    @property
    def length(self) -> int:
        return len(self.payload)


@runtime_checkable
class PacketSource(Protocol):
    def __iter__(self) -> Iterator[Packet]: ...

    def bytes_consumed(self) -> int: ...

    def total_size(self) -> int: ...


@runtime_checkable
class AttributesResolver(Protocol):
    def load_tmats(self, packet: Packet) -> None: ...

    def attributes(self, channel_id: int) -> Optional[FrameAttributes]: ...


class InMemoryPacketSource:
    """Replays a fixed packet list; progress counts payload bytes."""

    def __init__(self, packets: Sequence[Packet]):
        self._packets = list(packets)
        self._consumed = 0
        self._total = sum(packet.length for packet in self._packets)

    def __iter__(self) -> Iterator[Packet]:
        self._consumed = 0
        for packet in self._packets:
            self._consumed += packet.length
            yield packet

    def bytes_consumed(self) -> int:
        return self._consumed

    def total_size(self) -> int:
        return self._total


class AttributesTable:
    """
    Sparse channel id -> FrameAttributes map filled from a TMATS packet.

    ``decoder`` turns the TMATS packet into the map. Without a decoder the
    table is pre-populated and the TMATS packet only has to be present.
    """

    def __init__(
        self,
        attributes: Optional[Mapping[int, FrameAttributes]] = None,
        decoder: Optional[Callable[[Packet], Mapping[int, FrameAttributes]]] = None,
    ):
        self._preset: Dict[int, FrameAttributes] = dict(attributes or {})
        self._decoder = decoder
        self._table: Dict[int, FrameAttributes] = {}
        self.loaded = False

    def load_tmats(self, packet: Packet) -> None:
        if not packet.payload:
            raise ParseError("Failed to process TMATS info from first header.")
        table = dict(self._preset)
        if self._decoder is not None:
            try:
                table.update(self._decoder(packet))
            except (ValueError, KeyError) as exc:
                raise ParseError(f"Failed to assemble attributes from TMATS header: {exc}") from exc
        self._table = table
        self.loaded = True

    def attributes(self, channel_id: int) -> Optional[FrameAttributes]:
        return self._table.get(channel_id)

    def channels(self) -> Sequence[int]:
        return sorted(self._table)


class SourceBundle(NamedTuple):
    source: PacketSource
    resolver: AttributesResolver
    time_sync: TimeSync
