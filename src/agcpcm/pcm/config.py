from __future__ import annotations

import calendar
import configparser
import datetime as dt
import json
import logging
import math
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from .errors import ConfigurationError
from .frames import DEFAULT_FRAME_SYNC, COMMON_WORD_LEN, FrameAttributes, parse_sync_hex
from .processing import MAX_RAW_SAMPLE_VALUE, ParameterSpec

logger = logging.getLogger(__name__)

SLOPE_LABELS = ("+/-10V", "+/-5V", "0-10V", "0-5V")
SLOPE_VOLTAGE_BOUNDS = ((-10.0, 10.0), (-5.0, 5.0), (0.0, 10.0), (0.0, 5.0))
POLARITY_LABELS = ("Positive", "Negative")
SAMPLE_RATES = (1, 10, 100)
DEFAULT_SLOPE_INDEX = 2
DEFAULT_SCALE = 100.0
DEFAULT_RECEIVER_COUNT = 16
DEFAULT_CHANNELS_PER_RECEIVER = 3
CHANNEL_PREFIXES = ("L", "R", "C")
RESERVED_SECTIONS = {"Defaults", "Channels", "Frame", "Parameters", "Time", "Receivers", "Bounds"}
# override values kept verbatim; hex sync patterns must not be read as numbers
RAW_STRING_KEYS = {"frame_sync"}

SECONDS_PER_DAY = 86400
SECONDS_PER_HOUR = 3600
SECONDS_PER_MINUTE = 60

TimeValue = Union[str, float, int, None]


@dataclass
class WindowConfig:
    start: TimeValue = None
    stop: TimeValue = None
    year: Optional[int] = None
    extract_all_time: bool = False


@dataclass
class FrameLayout:
    data_words: Optional[int] = None
    bit_rate: Optional[float] = None
    min_syncs: Optional[int] = None
    byte_swap: Optional[bool] = None


@dataclass
class CalibrationConfig:
    scale: float = DEFAULT_SCALE  # dB per volt
    slope: int = DEFAULT_SLOPE_INDEX
    negative_polarity: bool = True


@dataclass
class ReceiverLayout:
    count: int = DEFAULT_RECEIVER_COUNT
    channels_per_receiver: int = DEFAULT_CHANNELS_PER_RECEIVER
    enabled: Optional[List[str]] = None  # parameter names; None selects every receiver channel


@dataclass
class HostRuntime:
    progress_interval: int = 100
    queue_maxsize: int = 1024


@dataclass
class RunConfig:
    input_path: Optional[Path] = None
    output_csv: Optional[Path] = None
    time_channel: int = -1
    pcm_channel: int = -1
    frame_sync: str = DEFAULT_FRAME_SYNC
    sample_rate: float = 1.0
    window: WindowConfig = field(default_factory=WindowConfig)
    frame: FrameLayout = field(default_factory=FrameLayout)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    receivers: ReceiverLayout = field(default_factory=ReceiverLayout)
    frame_setup: Optional[Path] = None
    parameters: List[ParameterSpec] = field(default_factory=list)
    host: HostRuntime = field(default_factory=HostRuntime)


@dataclass
class RunParameters:
    """Fully resolved inputs of one extraction run."""

    parameters: List[ParameterSpec]
    output_csv: Path
    time_channel: int
    pcm_channel: int
    frame_sync: int
    sync_length: int
    start_seconds: float
    stop_seconds: float
    sample_rate: float
    words_per_frame: Optional[int] = None
    bits_per_frame: Optional[int] = None
    bit_duration: Optional[float] = None
    min_syncs: Optional[int] = None
    byte_swap: Optional[bool] = None
    progress_interval: int = 100

    @property
    def enabled_parameters(self) -> List[ParameterSpec]:
        return [param for param in self.parameters if param.enabled]

    def attributes_for(self, base: FrameAttributes) -> FrameAttributes:
        """Apply the run's frame layout on top of the resolver's attributes."""
        attrs = base.with_sync(self.frame_sync, self.sync_length)
        return attrs.with_overrides(
            words_per_frame=self.words_per_frame,
            bits_per_frame=self.bits_per_frame,
            bit_duration=self.bit_duration,
            min_syncs=self.min_syncs,
            byte_swap=self.byte_swap,
        )


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str | None, overrides: Sequence[str] | None = None) -> RunConfig:
    """
    Load an extraction run configuration from JSON and apply CLI-style overrides.

    Overrides are expressed as dotted `key=value` pairs, e.g.:
        ["sample_rate=10", "window.start=123:10:00:00", "calibration.slope=0"]
    """
    data: Dict[str, Any] = _load_json(Path(path)) if path is not None else {}
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)
    base_dir = Path(path).resolve().parent if path is not None else Path.cwd()
    return config_from_mapping(merged, base_dir=base_dir)


def config_from_mapping(merged: Dict[str, Any], base_dir: Path | None = None) -> RunConfig:
    base_dir = base_dir or Path.cwd()
    window_data = merged.get("window") or {}
    frame_data = merged.get("frame") or {}
    cal_data = merged.get("calibration") or {}
    rcvr_data = merged.get("receivers") or {}
    host_data = merged.get("host") or {}

    def _path(value: Any) -> Optional[Path]:
        if not value:
            return None
        candidate = Path(value)
        return candidate if candidate.is_absolute() else base_dir / candidate

    enabled = rcvr_data.get("enabled")
    try:
        return RunConfig(
            input_path=_path(merged.get("input_path")),
            output_csv=_path(merged.get("output_csv")),
            time_channel=int(merged.get("time_channel", -1)),
            pcm_channel=int(merged.get("pcm_channel", -1)),
            frame_sync=str(merged.get("frame_sync", DEFAULT_FRAME_SYNC)),
            sample_rate=float(merged.get("sample_rate", 1.0)),
            window=WindowConfig(
                start=window_data.get("start"),
                stop=window_data.get("stop"),
                year=int(window_data["year"]) if window_data.get("year") is not None else None,
                extract_all_time=bool(window_data.get("extract_all_time", False)),
            ),
            frame=FrameLayout(
                data_words=_optional(int, frame_data.get("data_words")),
                bit_rate=_optional(float, frame_data.get("bit_rate")),
                min_syncs=_optional(int, frame_data.get("min_syncs")),
                byte_swap=_optional(bool, frame_data.get("byte_swap")),
            ),
            calibration=CalibrationConfig(
                scale=float(cal_data.get("scale", DEFAULT_SCALE)),
                slope=int(cal_data.get("slope", DEFAULT_SLOPE_INDEX)),
                negative_polarity=bool(cal_data.get("negative_polarity", True)),
            ),
            receivers=ReceiverLayout(
                count=int(rcvr_data.get("count", DEFAULT_RECEIVER_COUNT)),
                channels_per_receiver=int(
                    rcvr_data.get("channels_per_receiver", DEFAULT_CHANNELS_PER_RECEIVER)
                ),
                enabled=[str(name) for name in enabled] if enabled is not None else None,
            ),
            frame_setup=_path(merged.get("frame_setup")),
            parameters=[_parameter_from_mapping(item) for item in merged.get("parameters") or []],
            host=HostRuntime(
                progress_interval=int(host_data.get("progress_interval", 100)),
                queue_maxsize=int(host_data.get("queue_maxsize", 1024)),
            ),
        )
    except (TypeError, ValueError) as exc:
        if isinstance(exc, ConfigurationError):
            raise
        raise ConfigurationError(f"Invalid run configuration: {exc}") from exc


def _optional(kind, value):
    return None if value is None else kind(value)


def _parameter_from_mapping(item: Dict[str, Any]) -> ParameterSpec:
    if "name" not in item or "word" not in item:
        raise ConfigurationError("parameters entries require 'name' and 'word'")
    word = int(item["word"]) - 1
    if word < 0:
        raise ConfigurationError(f"Parameter '{item['name']}' has invalid word {item['word']}")
    return ParameterSpec(name=str(item["name"]), word=word, enabled=bool(item.get("enabled", True)))


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    if key in RAW_STRING_KEYS:
        return key, raw_value.strip()
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    if ":" in raw:
        return raw
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    if raw.startswith("{") and raw.endswith("}"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value


# ---------------------------------------------------------------------------
# Time window


def parse_dhms(text: str) -> Tuple[int, int, int, int]:
    """Parse and range-check a ``DDD:HH:MM:SS`` day-of-year time."""
    parts = str(text).strip().split(":")
    if len(parts) != 4:
        raise ConfigurationError("Start and stop times must be in DDD:HH:MM:SS format.")
    try:
        day, hour, minute, second = (int(part) for part in parts)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid time '{text}'.") from exc
    if not (1 <= day <= 366 and 0 <= hour <= 23 and 0 <= minute <= 59 and 0 <= second <= 59):
        raise ConfigurationError(
            f"Time '{text}' is out of valid range. Day: 1-366, Hour: 0-23, Minute: 0-59, Second: 0-59."
        )
    return day, hour, minute, second


def dhms_to_seconds(day: int, hour: int, minute: int, second: int, year: int) -> int:
    """Absolute (epoch) seconds of a day-of-year time within ``year``."""
    year_start = calendar.timegm((year, 1, 1, 0, 0, 0, 0, 1, 0))
    return (
        year_start
        + (day - 1) * SECONDS_PER_DAY
        + hour * SECONDS_PER_HOUR
        + minute * SECONDS_PER_MINUTE
        + second
    )


def _time_value(value: TimeValue, year: Optional[int], label: str) -> float:
    if value is None:
        raise ConfigurationError(f"Invalid {label} time.")
    if isinstance(value, (int, float)):
        return float(value)
    if year is None:
        raise ConfigurationError(f"window.year is required to resolve the {label} time '{value}'.")
    return float(dhms_to_seconds(*parse_dhms(value), year=year))


def resolve_window(window: WindowConfig) -> Tuple[float, float]:
    if window.extract_all_time:
        return 0.0, math.inf
    start = _time_value(window.start, window.year, "start")
    stop = _time_value(window.stop, window.year, "stop")
    if stop < start:
        raise ConfigurationError("Stop time must be after start time.")
    return start, stop


# ---------------------------------------------------------------------------
# Frame setup and calibration


def channel_prefix(index: int) -> str:
    if index < len(CHANNEL_PREFIXES):
        return CHANNEL_PREFIXES[index]
    return f"CH{index + 1}"


def parameter_name(channel_index: int, receiver_index: int) -> str:
    return f"{channel_prefix(channel_index)}_RCVR{receiver_index + 1}"


def default_parameters(receiver_count: int, channels_per_receiver: int) -> List[ParameterSpec]:
    """Receiver-major word map: L_RCVR1, R_RCVR1, C_RCVR1, L_RCVR2, ..."""
    params: List[ParameterSpec] = []
    for receiver in range(receiver_count):
        for channel in range(channels_per_receiver):
            params.append(
                ParameterSpec(
                    name=parameter_name(channel, receiver),
                    word=receiver * channels_per_receiver + channel,
                )
            )
    return params


def load_frame_setup(path: Path | str, data_words: int) -> List[ParameterSpec]:
    """
    Read the INI word map: one section per parameter with a 1-based ``Word``
    and an optional ``Enabled`` flag. Reserved settings sections are skipped.
    """
    parser = configparser.ConfigParser()
    parser.optionxform = str  # type: ignore[assignment]
    try:
        read = parser.read(Path(path), encoding="utf-8")
    except configparser.Error as exc:
        raise ConfigurationError(f"Could not read frame setup '{path}': {exc}") from exc
    if not read:
        raise ConfigurationError(f"Could not read frame setup '{path}'.")
    sections = [name for name in parser.sections() if name not in RESERVED_SECTIONS]
    if not sections:
        raise ConfigurationError(f"Frame setup '{path}' defines no parameters.")

    params: List[ParameterSpec] = []
    for name in sections:
        section = parser[name]
        if "Word" not in section:
            raise ConfigurationError(f"Frame setup parameter '{name}' has no Word entry.")
        try:
            word = int(section["Word"]) - 1
        except ValueError as exc:
            raise ConfigurationError(f"Frame setup parameter '{name}' has an invalid Word.") from exc
        if word < 0 or word >= data_words:
            raise ConfigurationError(
                f"Frame setup parameter '{name}' word {word + 1} is outside 1-{data_words}."
            )
        enabled = section.getboolean("Enabled", fallback=True)
        params.append(ParameterSpec(name=name, word=word, enabled=enabled))
    return params


def calibration_bounds(calibration: CalibrationConfig) -> Tuple[float, float]:
    if calibration.scale <= 0:
        raise ConfigurationError("Scale must be a positive number.")
    if not 0 <= calibration.slope < len(SLOPE_VOLTAGE_BOUNDS):
        raise ConfigurationError("Invalid slope index.")
    lower_v, upper_v = SLOPE_VOLTAGE_BOUNDS[calibration.slope]
    return lower_v * calibration.scale, upper_v * calibration.scale


def calibrate(
    parameters: Iterable[ParameterSpec],
    calibration: CalibrationConfig,
    selected: Optional[Set[str]] = None,
) -> List[ParameterSpec]:
    """
    Attach the linear raw-count to dB calibration and the receiver selection
    to every parameter.

    A parameter stays enabled only when its own ``enabled`` flag (the frame
    setup ``Enabled`` key) is set and its name is in ``selected``; a receiver
    grid selection never re-enables a parameter the frame setup turned off.
    """
    lower, upper = calibration_bounds(calibration)
    span = upper - lower
    slope = span / MAX_RAW_SAMPLE_VALUE
    if calibration.negative_polarity:
        slope = -slope
        offset = -upper / span * MAX_RAW_SAMPLE_VALUE
    else:
        offset = lower / span * MAX_RAW_SAMPLE_VALUE
    logger.debug(
        "Calibration %s, %s polarity, %.1f dB/V: slope=%g offset=%g",
        SLOPE_LABELS[calibration.slope],
        POLARITY_LABELS[int(calibration.negative_polarity)],
        calibration.scale,
        slope,
        offset,
    )
    calibrated = []
    for param in parameters:
        enabled = param.enabled and (selected is None or param.name in selected)
        calibrated.append(replace(param, slope=slope, offset=offset, enabled=enabled))
    return calibrated


def selected_receiver_names(receivers: ReceiverLayout) -> Set[str]:
    names = {
        parameter_name(channel, receiver)
        for receiver in range(receivers.count)
        for channel in range(receivers.channels_per_receiver)
    }
    if receivers.enabled is not None:
        names &= set(receivers.enabled)
    return names


def resolve_parameters(cfg: RunConfig) -> List[ParameterSpec]:
    receivers = cfg.receivers
    if receivers.count <= 0 or receivers.channels_per_receiver <= 0:
        raise ConfigurationError("Receiver count and channels per receiver must be positive.")
    if cfg.parameters:
        params = list(cfg.parameters)
    elif cfg.frame_setup is not None:
        params = load_frame_setup(cfg.frame_setup, receivers.count * receivers.channels_per_receiver)
    else:
        params = default_parameters(receivers.count, receivers.channels_per_receiver)
    calibrated = calibrate(params, cfg.calibration, selected_receiver_names(receivers))
    if not any(param.enabled for param in calibrated):
        raise ConfigurationError("No receivers selected.")
    return calibrated


def default_output_name(now: Optional[dt.datetime] = None) -> str:
    stamp = (now or dt.datetime.now()).strftime("%m%d%y%H%M%S")
    return f"output{stamp}.csv"


def build_run_parameters(cfg: RunConfig) -> RunParameters:
    """Validate a :class:`RunConfig` and derive the engine inputs from it."""
    if cfg.time_channel < 0:
        raise ConfigurationError("Invalid time channel.")
    if cfg.pcm_channel < 0:
        raise ConfigurationError("Invalid PCM channel.")
    if cfg.sample_rate <= 0:
        raise ConfigurationError("Invalid sample rate.")
    if cfg.sample_rate not in SAMPLE_RATES:
        logger.warning("Sample rate %g Hz is not one of the usual rates %s", cfg.sample_rate, SAMPLE_RATES)
    pattern, sync_length = parse_sync_hex(cfg.frame_sync)
    params = resolve_parameters(cfg)
    data_words = cfg.frame.data_words if cfg.frame.data_words is not None else len(params)
    bits_per_frame = data_words * COMMON_WORD_LEN + sync_length
    if sync_length > bits_per_frame:
        raise ConfigurationError(
            f"Frame sync pattern ({sync_length} bits) exceeds frame length ({bits_per_frame} bits)."
        )
    for param in params:
        if param.enabled and param.word >= data_words:
            raise ConfigurationError(
                f"Parameter '{param.name}' word {param.word + 1} is outside the {data_words}-word frame."
            )
    start, stop = resolve_window(cfg.window)
    bit_duration = None
    if cfg.frame.bit_rate is not None:
        if cfg.frame.bit_rate <= 0:
            raise ConfigurationError("Bit rate must be a positive number.")
        bit_duration = 10_000_000 / cfg.frame.bit_rate
    output = cfg.output_csv or Path(default_output_name())
    return RunParameters(
        parameters=params,
        output_csv=output,
        time_channel=cfg.time_channel,
        pcm_channel=cfg.pcm_channel,
        frame_sync=pattern,
        sync_length=sync_length,
        start_seconds=start,
        stop_seconds=stop,
        sample_rate=cfg.sample_rate,
        words_per_frame=data_words,
        bits_per_frame=bits_per_frame,
        bit_duration=bit_duration,
        min_syncs=cfg.frame.min_syncs,
        byte_swap=cfg.frame.byte_swap,
        progress_interval=max(cfg.host.progress_interval, 1),
    )
