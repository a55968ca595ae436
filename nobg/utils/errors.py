from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    MODEL_LOAD_FAILURE = "ModelLoadFailure"
    INVALID_SOURCE_DIMENSIONS = "InvalidSourceDimensions"
    SEGMENTATION_FAILURE = "SegmentationFailure"
    RECORDER_FLUSH_FAILURE = "RecorderFlushFailure"
    SOURCE_READ_FAILURE = "SourceReadFailure"


class PipelineError(Exception):
    """Base error carrying a taxonomy kind and a human-readable cause."""

    kind: ErrorKind = ErrorKind.SOURCE_READ_FAILURE
    fatal = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class ModelLoadFailure(PipelineError):
    kind = ErrorKind.MODEL_LOAD_FAILURE


class InvalidSourceDimensions(PipelineError):
    kind = ErrorKind.INVALID_SOURCE_DIMENSIONS


class SegmentationFailure(PipelineError):
    # Per-frame and recoverable: the orchestrator counts it as an empty result.
    kind = ErrorKind.SEGMENTATION_FAILURE
    fatal = False


class RecorderFlushFailure(PipelineError):
    kind = ErrorKind.RECORDER_FLUSH_FAILURE


class SourceReadFailure(PipelineError):
    kind = ErrorKind.SOURCE_READ_FAILURE
