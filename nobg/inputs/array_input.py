from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from nobg.inputs.base_input import BaseInput, PlaybackClock
from nobg.utils.types import FramePacket


class ArrayInput(BaseInput):
    """In-memory RGBA frames played back at ``fps``."""

    def __init__(
        self,
        frames: Sequence[np.ndarray],
        fps: float = 30.0,
        realtime: bool = True,
        clock: Optional[PlaybackClock] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ):
        super().__init__(realtime=realtime, clock=clock)
        self.frames = list(frames)
        self._fps = float(fps)
        first = self.frames[0] if self.frames else None
        self._width = int(width if width is not None else (first.shape[1] if first is not None else 0))
        self._height = int(height if height is not None else (first.shape[0] if first is not None else 0))

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def fps(self) -> float:
        return self._fps

    @property
    def frame_count(self) -> int:
        return len(self.frames)

    def _read_frame(self, index: int) -> Optional[FramePacket]:
        if index >= len(self.frames):
            return None
        # Hand out a copy so the orchestrator owns the buffer for the step.
        return FramePacket(frame=self.frames[index].copy(), timestamp=index / self._fps, index=index)
