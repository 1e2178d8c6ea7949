from __future__ import annotations

import csv
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, TextIO, Tuple

import numpy as np

from .errors import ConfigurationError

TIME_ROUNDING_OFFSET = 0.0005
MAX_RAW_SAMPLE_VALUE = 0xFFFF


@dataclass(frozen=True)
class ParameterSpec:
    """One named word of the minor frame with its calibration."""

    name: str
    word: int  # zero-based data word index
    slope: float = 1.0
    offset: float = 0.0
    enabled: bool = True

    def scale(self, raw_value: int, word_mask: int = MAX_RAW_SAMPLE_VALUE) -> float:
        return ((raw_value & word_mask) + self.offset) * self.slope


def format_time_sample(seconds: float) -> Tuple[int, str]:
    """
    Day-of-year and ``HH:MM:SS.mmm`` for an absolute time in seconds.

    Half a millisecond is added before truncating so values such as
    ``100.1`` that are stored as ``100.0999...`` print as ``.100``.
    """
    rounded = seconds + TIME_ROUNDING_OFFSET
    whole = int(rounded)
    millis = int((rounded - whole) * 1000)
    tm = time.gmtime(whole)
    return tm.tm_yday, f"{tm.tm_hour:02d}:{tm.tm_min:02d}:{tm.tm_sec:02d}.{millis:03d}"


class CsvWriter:
    """Writes the ``Day,Time,<names>`` header and one row per averaged bucket."""

    def __init__(self, path: Path, names: Sequence[str]):
        self.path = Path(path)
        self.names = list(names)
        self._file_handle: Optional[TextIO] = None
        self._writer = None
        self.rows = 0

    def open(self) -> None:
        if self.path.parent and not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file_handle = self.path.open("w", newline="", encoding="utf-8")
        self._writer = csv.writer(self._file_handle, lineterminator="\n")
        self._writer.writerow(["Day", "Time", *self.names])

    def write_row(self, seconds: float, values: Sequence[float]) -> None:
        if self._writer is None:
            raise RuntimeError("CsvWriter.open() must be called before writing rows")
        day, clock = format_time_sample(seconds)
        self._writer.writerow([day, clock, *("%f" % float(value) for value in values)])
        self.rows += 1

    def close(self) -> None:
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None
            self._writer = None


class SampleAverager:
    """
    Averages calibrated frame words over fixed time buckets.

    Buckets are ``1 / sample_rate`` wide and anchored at ``start_seconds``.
    Frames outside ``[start_seconds, stop_seconds]`` are ignored. A frame at
    or past the next boundary flushes the open bucket and moves to the bucket
    containing it, so empty buckets in data gaps produce no rows.
    """

    def __init__(
        self,
        parameters: Sequence[ParameterSpec],
        sample_rate: float,
        start_seconds: float,
        stop_seconds: float,
        writer: Optional[CsvWriter] = None,
        word_mask: int = MAX_RAW_SAMPLE_VALUE,
    ):
        if sample_rate <= 0:
            raise ConfigurationError("Sample rate must be a positive number.")
        self.parameters = [param for param in parameters if param.enabled]
        self.sample_rate = float(sample_rate)
        self.period = 1.0 / self.sample_rate
        self.start_seconds = float(start_seconds)
        self.stop_seconds = float(stop_seconds)
        self.writer = writer
        self.word_mask = word_mask
        self._words = np.array([param.word for param in self.parameters], dtype=np.intp)
        self._offsets = np.array([param.offset for param in self.parameters], dtype=float)
        self._slopes = np.array([param.slope for param in self.parameters], dtype=float)
        self._sums = np.zeros(len(self.parameters), dtype=float)
        self.sample_count = 0
        self.bucket_index = 0
        self.rows_written = 0
        # kept only when no writer is attached
        self.rows: List[Tuple[float, List[float]]] = []

    @property
    def bucket_start(self) -> float:
        return self._boundary(self.bucket_index)

    @property
    def sums(self) -> np.ndarray:
        return self._sums.copy()

    def _boundary(self, index: int) -> float:
        return self.start_seconds + index * self.period

    def in_window(self, timestamp: float) -> bool:
        return self.start_seconds <= timestamp <= self.stop_seconds

    def add(self, timestamp: float, words: Sequence[int]) -> bool:
        """Accumulate one frame; returns False when it falls outside the window."""
        if not self.in_window(timestamp):
            return False
        if timestamp >= self._boundary(self.bucket_index + 1):
            self.flush()
            self.bucket_index = self._locate(timestamp)
        raw = np.asarray(words, dtype=np.int64)[self._words] & self.word_mask
        self._sums += (raw + self._offsets) * self._slopes
        self.sample_count += 1
        return True

    def _locate(self, timestamp: float) -> int:
        index = max(self.bucket_index + 1, int(math.floor((timestamp - self.start_seconds) * self.sample_rate)))
        while self._boundary(index + 1) <= timestamp:
            index += 1
        while index > self.bucket_index + 1 and self._boundary(index) > timestamp:
            index -= 1
        return index

    def flush(self) -> bool:
        if self.sample_count == 0:
            return False
        means = (self._sums / self.sample_count).tolist()
        row_time = self.bucket_start
        if self.writer is not None:
            self.writer.write_row(row_time, means)
        else:
            self.rows.append((row_time, means))
        self.rows_written += 1
        self._sums[:] = 0.0
        self.sample_count = 0
        return True

    def finish(self) -> None:
        self.flush()
