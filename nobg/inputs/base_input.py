from __future__ import annotations

import abc
import time
from typing import Callable, Optional

from nobg.utils.errors import InvalidSourceDimensions
from nobg.utils.types import FramePacket, FramePoll, SourceStatus


class PlaybackClock:
    """Wall-clock playback position, independent of how fast frames are consumed."""

    def __init__(self, now: Callable[[], float] = time.perf_counter):
        self._now = now
        self._t0: Optional[float] = None

    def start(self) -> None:
        self._t0 = self._now()

    @property
    def started(self) -> bool:
        return self._t0 is not None

    def elapsed(self) -> float:
        if self._t0 is None:
            return 0.0
        return max(0.0, self._now() - self._t0)

    def frame_index(self, fps: float) -> int:
        return int(self.elapsed() * fps)


class BaseInput(abc.ABC):
    """
    Frame source polled by the orchestrator.

    In realtime mode the playback position follows ``clock``; frames that the
    consumer was too slow to poll are never reported. In offline mode the
    position only moves on ``advance()``, so every decoded frame is reported.
    Each frame is reported at most once; polling again before the position
    moves returns ``SourceStatus.NOT_READY``.
    """

    def __init__(self, realtime: bool = True, clock: Optional[PlaybackClock] = None):
        self.realtime = realtime
        self.clock = clock or PlaybackClock()
        self._cursor = 0
        self._last_reported = -1
        self._started = False

    @property
    @abc.abstractmethod
    def width(self) -> int:
        ...

    @property
    @abc.abstractmethod
    def height(self) -> int:
        ...

    @property
    @abc.abstractmethod
    def fps(self) -> float:
        ...

    @property
    def frame_count(self) -> int:
        return 0

    @abc.abstractmethod
    def _read_frame(self, index: int) -> Optional[FramePacket]:
        """Decode frame ``index`` (monotonically increasing). None means end of stream."""

    def _rewind(self) -> None:
        return

    def validate_dimensions(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise InvalidSourceDimensions(f"source reports {self.width}x{self.height}")

    def start(self) -> None:
        """Begin playback from the first frame."""
        self._rewind()
        self._cursor = 0
        self._last_reported = -1
        self._started = True
        self.clock.start()

    def stop(self) -> None:
        self._started = False

    def position(self) -> int:
        if self.realtime:
            return self.clock.frame_index(self.fps)
        return self._cursor

    def current_frame(self) -> FramePoll:
        if not self._started:
            return SourceStatus.NOT_READY
        target = self.position()
        if target <= self._last_reported:
            return SourceStatus.NOT_READY
        if self.frame_count and target >= self.frame_count:
            return SourceStatus.END_OF_STREAM
        packet = self._read_frame(target)
        if packet is None:
            return SourceStatus.END_OF_STREAM
        self._last_reported = target
        return packet

    def advance(self) -> None:
        # Realtime playback is moved by the clock alone.
        if not self.realtime:
            self._cursor = self._last_reported + 1
