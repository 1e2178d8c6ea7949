"""
PCM minor frame extraction engine.

Frame synchronisation, RNRZ-L descrambling, packet time correlation and
bucketed averaging of calibrated receiver levels into a CSV. Container and
TMATS decoding are supplied by the caller through the protocols in
:mod:`agcpcm.pcm.sources`.
"""

from .config import RunConfig, RunParameters, build_run_parameters, load_config
from .derandomizer import DerandomizationGate, Derandomizer
from .errors import ConfigurationError, DataError, ExtractionError, ParseError
from .frames import Frame, FrameAttributes, FrameSynchronizer, SyncPhase
from .processing import CsvWriter, ParameterSpec, SampleAverager
from .runner import (
    ErrorEvent,
    ExtractionWorker,
    FinishedEvent,
    FrameExtractor,
    LogEvent,
    PrescanResult,
    ProgressEvent,
    RunResult,
    prescan,
    run_extraction,
)
from .sources import AttributesTable, DataType, InMemoryPacketSource, Packet, SourceBundle
from .timing import LinearTimeSync, TimeCorrelator

__all__ = [
    "RunConfig",
    "RunParameters",
    "build_run_parameters",
    "load_config",
    "DerandomizationGate",
    "Derandomizer",
    "ConfigurationError",
    "DataError",
    "ExtractionError",
    "ParseError",
    "Frame",
    "FrameAttributes",
    "FrameSynchronizer",
    "SyncPhase",
    "CsvWriter",
    "ParameterSpec",
    "SampleAverager",
    "ErrorEvent",
    "ExtractionWorker",
    "FinishedEvent",
    "FrameExtractor",
    "LogEvent",
    "PrescanResult",
    "ProgressEvent",
    "RunResult",
    "prescan",
    "run_extraction",
    "AttributesTable",
    "DataType",
    "InMemoryPacketSource",
    "Packet",
    "SourceBundle",
    "LinearTimeSync",
    "TimeCorrelator",
]
