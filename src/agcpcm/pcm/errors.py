from __future__ import annotations


class ExtractionError(Exception):
    """Base class for failures reported to the user by an extraction run."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(ExtractionError, ValueError):
    """Invalid run parameters or missing frame attributes."""


class ParseError(ExtractionError):
    """Missing or undecodable TMATS record."""


class DataError(ExtractionError):
    """The pass finished but produced no usable frames."""


SYNC_NOT_FOUND = (
    "Frame sync pattern was not found in the data stream. "
    "Verify the frame sync pattern and PCM channel are correct."
)
NO_FRAMES_EXTRACTED = (
    "Frame sync pattern was found but no valid frames were extracted. "
    "Check the frame parameters and time window settings."
)
