from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import List, Union

import numpy as np


class SourceStatus(str, Enum):
    NOT_READY = "NOT_READY"
    END_OF_STREAM = "END_OF_STREAM"


@dataclass
class FramePacket:
    frame: np.ndarray
    timestamp: float
    index: int = 0

    @property
    def width(self) -> int:
        return int(self.frame.shape[1])

    @property
    def height(self) -> int:
        return int(self.frame.shape[0])


FramePoll = Union[FramePacket, SourceStatus]


@dataclass
class Region:
    """One detected subject. ``confidence`` is a float map in [0, 1], full-size or coarser."""

    confidence: np.ndarray
    label: str = "person"
    score: float = 1.0


SegmentationResult = List[Region]


@dataclass
class Artifact:
    data: bytes
    width: int
    height: int
    fps: float
    frame_count: int
    container: str = "webm"
    mime_type: str = "video/webm"

    @property
    def duration_s(self) -> float:
        return self.frame_count / self.fps if self.fps > 0 else 0.0

    def __len__(self) -> int:
        return len(self.data)


@dataclass
class RunMetrics:
    frames_polled: int = 0
    frames_segmented: int = 0
    frames_emitted: int = 0
    frames_skipped: int = 0
    cache_reuses: int = 0
    segmentation_failures: int = 0
    segmentation_timeouts: int = 0
    slow_segmentations: int = 0
    mean_segmentation_ms: float = 0.0
    processing_fps: float = 0.0
    warnings: List[str] = field(default_factory=list)


_EXTENSIONS = {"matroska": "mkv"}


def artifact_filename(source_name: str, container: str) -> str:
    """``clip.mp4`` + ``webm`` -> ``clip_nobg.webm``."""
    stem = PurePath(source_name).stem or "output"
    return f"{stem}_nobg.{_EXTENSIONS.get(container, container)}"
