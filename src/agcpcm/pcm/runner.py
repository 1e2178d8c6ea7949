from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Union

from .config import RunParameters
from .derandomizer import DerandomizationGate, Derandomizer, has_sync_pattern
from .errors import (
    NO_FRAMES_EXTRACTED,
    SYNC_NOT_FOUND,
    ConfigurationError,
    DataError,
    ExtractionError,
    ParseError,
)
from .frames import MAX_CHANNEL_ID, FrameAttributes, FrameSynchronizer, swap_word_bytes, unpack_bits
from .processing import CsvWriter, SampleAverager
from .sources import AttributesResolver, DataType, Packet, PacketSource, SourceBundle
from .timing import TimeCorrelator, TimeSync

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    percent: int


@dataclass(frozen=True)
class LogEvent:
    message: str


@dataclass(frozen=True)
class ErrorEvent:
    message: str


@dataclass
class RunResult:
    output_csv: Path
    bytes_processed: int = 0
    syncs_found: int = 0
    frames_extracted: int = 0
    packets_read: int = 0
    rows_written: int = 0
    derandomized: bool = False


@dataclass(frozen=True)
class FinishedEvent:
    success: bool
    result: Optional[RunResult] = None


Event = Union[ProgressEvent, LogEvent, ErrorEvent, FinishedEvent]
EventSink = Callable[[Event], None]


@dataclass(frozen=True)
class PrescanResult:
    sync_found: bool
    randomized: bool


def _discard(_event: Event) -> None:
    return None


def resolve_attributes(
    resolver: AttributesResolver, params: RunParameters
) -> FrameAttributes:
    """Look up the PCM channel's attributes and apply the run's frame layout."""
    base = resolver.attributes(params.pcm_channel)
    if base is None:
        raise ConfigurationError("Channel info not set up for selected PCM channel.")
    attrs = params.attributes_for(base)
    attrs.validate()
    for param in params.enabled_parameters:
        if param.word >= attrs.words_per_frame:
            raise ConfigurationError(
                f"Parameter '{param.name}' word {param.word + 1} is outside the "
                f"{attrs.words_per_frame}-word frame."
            )
    return attrs


class FrameExtractor:
    """
    Single sequential pass over a packet source: TMATS, time and PCM packets
    in, averaged CSV rows out.

    Progress, stage messages and the summary line are sent to ``emit``; fatal
    conditions raise :class:`ExtractionError` subclasses.
    """

    def __init__(
        self,
        bundle: SourceBundle,
        params: RunParameters,
        emit: Optional[EventSink] = None,
    ):
        self.source: PacketSource = bundle.source
        self.resolver: AttributesResolver = bundle.resolver
        self.time_sync: TimeSync = bundle.time_sync
        self.params = params
        self._emit = emit or _discard
        self._last_percent = -1
        self._logged_decile = 0

    def _log(self, message: str, *, level: int = logging.INFO) -> None:
        logger.log(level, message)
        self._emit(LogEvent(message))

    def _progress(self, percent: int) -> None:
        percent = max(0, min(100, percent))
        if percent == self._last_percent:
            return
        self._last_percent = percent
        self._emit(ProgressEvent(percent))
        decile = percent // 10
        if 0 < decile < 10 and decile > self._logged_decile:
            self._logged_decile = decile
            self._log(f"{percent}% complete...")

    def _percent_done(self) -> int:
        total = self.source.total_size()
        if total <= 0:
            return 0
        return int(self.source.bytes_consumed() * 100 / total)

    def run(self) -> RunResult:
        params = self.params
        if not 0 <= params.time_channel <= MAX_CHANNEL_ID:
            raise ConfigurationError("Time channel ID is out of range.")
        if not 0 <= params.pcm_channel <= MAX_CHANNEL_ID:
            raise ConfigurationError("PCM channel ID is out of range.")

        enabled = params.enabled_parameters
        if not enabled:
            raise ConfigurationError("No receivers selected.")

        self._log("Creating output CSV file...")
        writer = CsvWriter(params.output_csv, [param.name for param in enabled])
        writer.open()
        result = RunResult(output_csv=writer.path)
        try:
            packets = iter(self.source)
            self._read_tmats(packets)
            result.packets_read = 1

            self._log("Setting up PCM attributes...")
            attrs = resolve_attributes(self.resolver, params)
            logger.debug(
                "PCM channel %d: sync=%X/%d bits, %d words, %d bits/frame, %.3f ticks/bit, min_syncs=%d",
                params.pcm_channel,
                attrs.sync_pattern,
                attrs.sync_length,
                attrs.words_per_frame,
                attrs.bits_per_frame,
                attrs.bit_duration,
                attrs.min_syncs,
            )
            synchronizer = FrameSynchronizer(attrs)
            gate = DerandomizationGate(attrs.sync_pattern, attrs.sync_mask, attrs.sync_length)
            correlator = TimeCorrelator(self.time_sync, attrs.bit_duration, attrs.bits_per_frame)
            averager = SampleAverager(
                enabled,
                params.sample_rate,
                params.start_seconds,
                params.stop_seconds,
                writer=writer,
                word_mask=attrs.word_mask,
            )

            self._log("Processing PCM data...")
            self._scan(packets, attrs, synchronizer, gate, correlator, averager, result)
            averager.finish()
            result.rows_written = averager.rows_written
            result.syncs_found = synchronizer.stats()["syncs"]
            result.derandomized = gate.enabled
        finally:
            writer.close()

        self._progress(100)
        self._log(
            f"{result.bytes_processed} bytes processed, {result.syncs_found} syncs found, "
            f"{result.frames_extracted} frames extracted."
        )
        if result.syncs_found == 0:
            raise DataError(SYNC_NOT_FOUND)
        if result.frames_extracted == 0:
            raise DataError(NO_FRAMES_EXTRACTED)
        self._log("Processing complete.")
        return result

    def _read_tmats(self, packets: Iterator[Packet]) -> None:
        self._log("Reading TMATS metadata...")
        read_tmats(packets, self.resolver)

    def _scan(
        self,
        packets: Iterator[Packet],
        attrs: FrameAttributes,
        synchronizer: FrameSynchronizer,
        gate: DerandomizationGate,
        correlator: TimeCorrelator,
        averager: SampleAverager,
        result: RunResult,
    ) -> None:
        params = self.params
        interval = max(params.progress_interval, 1)
        while True:
            try:
                packet = next(packets)
            except StopIteration:
                break
            except OSError as exc:
                logger.warning("Read failure after %d packets: %s", result.packets_read, exc)
                self._log("File read error; aborting parsing.", level=logging.WARNING)
                break
            result.packets_read += 1
            if result.packets_read % interval == 0:
                self._progress(self._percent_done())

            if packet.data_type is DataType.TIME and packet.channel_id == params.time_channel:
                self.time_sync.update_reference(packet)
                continue
            if packet.data_type is not DataType.PCM or packet.channel_id != params.pcm_channel:
                continue
            result.bytes_processed += len(packet.payload)
            if not packet.payload:
                continue

            payload = swap_word_bytes(packet.payload) if attrs.byte_swap else packet.payload
            raw_bits = unpack_bits(payload)
            first_decision = not gate.decided
            bits = gate.apply(raw_bits)
            if first_decision:
                if gate.enabled:
                    self._log("Sync not found; derandomizing bitstream...")
                else:
                    self._log("Frame sync detected in raw data.")

            start_bit = correlator.begin_packet(packet.relative_time, len(bits))
            for frame in synchronizer.process(bits.tolist(), start_bit):
                timestamp = correlator.frame_time(frame.sync_bit)
                if averager.add(timestamp, frame.words):
                    result.frames_extracted += 1


def read_tmats(packets: Iterator[Packet], resolver: AttributesResolver) -> None:
    """Consume the first packet, which must carry the TMATS record."""
    try:
        first = next(packets)
    except (StopIteration, OSError) as exc:
        raise ParseError("Failed to read first header.") from exc
    if first.data_type is not DataType.TMATS:
        raise ParseError("Failed to find TMATS message.")
    resolver.load_tmats(first)


def run_extraction(
    bundle: SourceBundle,
    params: RunParameters,
    emit: Optional[EventSink] = None,
) -> Optional[RunResult]:
    """Run one extraction and report the outcome through events only."""
    sink = emit or _discard
    try:
        result = FrameExtractor(bundle, params, sink).run()
    except ExtractionError as exc:
        logger.error("Extraction failed: %s", exc.message)
        sink(ErrorEvent(exc.message))
        sink(FinishedEvent(False))
        return None
    except OSError as exc:
        message = f"I/O error: {exc}"
        logger.error("Extraction failed: %s", message)
        sink(ErrorEvent(message))
        sink(FinishedEvent(False))
        return None
    except Exception as exc:
        logger.exception("Extraction aborted by unexpected error")
        sink(ErrorEvent(str(exc) or type(exc).__name__))
        sink(FinishedEvent(False))
        return None
    sink(FinishedEvent(True, result))
    return result


class ExtractionWorker(threading.Thread):
    """Runs :func:`run_extraction` off the calling thread and posts events to a queue."""

    def __init__(
        self,
        bundle: SourceBundle,
        params: RunParameters,
        event_queue: Optional["queue.Queue[Event]"] = None,
    ) -> None:
        super().__init__(daemon=True)
        self.bundle = bundle
        self.params = params
        self.events: "queue.Queue[Event]" = event_queue if event_queue is not None else queue.Queue()
        self.result: Optional[RunResult] = None

    def run(self) -> None:
        self.result = run_extraction(self.bundle, self.params, self.events.put)


def drain_events(event_queue: "queue.Queue[Event]", timeout: float = 1.0) -> Iterator[Event]:
    """Yield events until the :class:`FinishedEvent` has been delivered."""
    while True:
        try:
            event = event_queue.get(timeout=timeout)
        except queue.Empty:
            continue
        yield event
        if isinstance(event, FinishedEvent):
            return


def prescan(packets: Iterable[Packet], attributes: FrameAttributes, pcm_channel: int) -> PrescanResult:
    """
    Look at the first PCM packet of ``pcm_channel`` and report whether the sync
    pattern is visible in the clear, only after descrambling, or not at all.
    """
    for packet in packets:
        if packet.data_type is not DataType.PCM or packet.channel_id != pcm_channel:
            continue
        if not packet.payload:
            continue
        payload = swap_word_bytes(packet.payload) if attributes.byte_swap else packet.payload
        bits = unpack_bits(payload)
        pattern, mask, length = attributes.sync_pattern, attributes.sync_mask, attributes.sync_length
        if has_sync_pattern(bits.tolist(), pattern, mask, length):
            return PrescanResult(sync_found=True, randomized=False)
        clear = Derandomizer().process(bits)
        if has_sync_pattern(clear.tolist(), pattern, mask, length):
            return PrescanResult(sync_found=True, randomized=True)
        return PrescanResult(sync_found=False, randomized=False)
    return PrescanResult(sync_found=False, randomized=False)


def collect_events(bundle: SourceBundle, params: RunParameters) -> List[Event]:
    """Run synchronously and return every event in order."""
    events: List[Event] = []
    run_extraction(bundle, params, events.append)
    return events


def summarize(result: RunResult) -> Dict[str, object]:
    return {
        "output_csv": str(result.output_csv),
        "bytes_processed": result.bytes_processed,
        "syncs_found": result.syncs_found,
        "frames_extracted": result.frames_extracted,
        "packets_read": result.packets_read,
        "rows_written": result.rows_written,
        "derandomized": result.derandomized,
    }


def prescan_bundle(bundle: SourceBundle, params: RunParameters) -> PrescanResult:
    """Read the TMATS record, resolve the PCM attributes and prescan the rest."""
    packets = iter(bundle.source)
    read_tmats(packets, bundle.resolver)
    attributes = resolve_attributes(bundle.resolver, params)
    return prescan(packets, attributes, params.pcm_channel)
