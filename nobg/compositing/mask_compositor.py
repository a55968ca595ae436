from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from nobg.compositing.mask_cache import MaskCache
from nobg.perception.segmentation.postprocess import apply_alpha, merge_confidence, threshold_mask
from nobg.utils.config import DEFAULT_THRESHOLD
from nobg.utils.logger import get_logger
from nobg.utils.types import SegmentationResult


class MaskSource(str, Enum):
    FRESH = "FRESH"  # derived from this frame's segmentation
    CACHED = "CACHED"  # mask freeze: previous mask reused
    NONE = "NONE"  # nothing detected yet
    ERROR = "ERROR"  # derivation/compositing failed


@dataclass
class CompositeResult:
    source: MaskSource
    frame: Optional[np.ndarray] = None
    mask: Optional[np.ndarray] = None

    @property
    def emitted(self) -> bool:
        return self.frame is not None


class MaskCompositor:
    """
    Turns segmentation output into a binary alpha mask and keys the frame with it.

    Empty results reuse the cached mask unchanged so the background does not pop
    back in on isolated misses. Until a first mask exists nothing is emitted.
    """

    def __init__(self, threshold: float = DEFAULT_THRESHOLD, cache: Optional[MaskCache] = None):
        self.threshold = float(threshold)
        self.cache = cache if cache is not None else MaskCache()
        self.logger = get_logger(__name__)

    def derive_mask(self, regions: SegmentationResult, height: int, width: int) -> np.ndarray:
        return threshold_mask(merge_confidence(regions, height, width), self.threshold)

    def process(self, frame: np.ndarray, regions: SegmentationResult) -> CompositeResult:
        height, width = frame.shape[:2]
        try:
            if regions:
                mask = self.derive_mask(regions, height, width)
                self.cache.store(mask)
                source = MaskSource.FRESH
            else:
                mask = self.cache.load()
                if mask is None:
                    return CompositeResult(source=MaskSource.NONE)
                source = MaskSource.CACHED
            return CompositeResult(source=source, frame=apply_alpha(frame, mask), mask=mask)
        except Exception as exc:
            self.logger.warning("Compositing failed, skipping frame: %s", exc)
            return CompositeResult(source=MaskSource.ERROR)

    def reset(self) -> None:
        self.cache.clear()
