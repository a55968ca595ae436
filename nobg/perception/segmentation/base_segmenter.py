from __future__ import annotations

import abc
import asyncio

import numpy as np

from nobg.utils.types import SegmentationResult


class BaseSegmenter(abc.ABC):
    """
    Foreground segmentation capability used by the orchestrator.

    Subclasses implement the blocking ``infer``; ``segment`` runs it on a worker
    thread so playback keeps its cadence while the model is busy. Natively
    asynchronous adapters may override ``segment`` instead.
    """

    loaded: bool = False

    def load(self) -> None:
        """Acquire model weights/runtime. Raise ModelLoadFailure when unavailable."""
        self.loaded = True

    @abc.abstractmethod
    def infer(self, frame: np.ndarray) -> SegmentationResult:
        """
        Input:
            frame: RGBA image (H, W, 4), uint8
        Output:
            list of Region, each with a float confidence map in [0, 1].
            An empty list means nothing was detected.
        """
        raise NotImplementedError

    async def segment(self, frame: np.ndarray) -> SegmentationResult:
        return await asyncio.to_thread(self.infer, frame)
