from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

try:
    import cv2
except ImportError:  # pragma: no cover
    cv2 = None

from nobg.inputs.base_input import BaseInput, PlaybackClock
from nobg.utils.errors import SourceReadFailure
from nobg.utils.logger import get_logger
from nobg.utils.types import FramePacket


@dataclass
class VideoMeta:
    fps: float
    width: int
    height: int
    frame_count: int


class VideoInput(BaseInput):
    def __init__(
        self,
        path: str | Path,
        allow_missing: bool = False,
        frame_rate: Optional[float] = None,
        realtime: bool = True,
        clock: Optional[PlaybackClock] = None,
    ):
        super().__init__(realtime=realtime, clock=clock)
        self.path = Path(path)
        self.logger = get_logger(__name__)
        self.frame_rate = frame_rate
        self.cap = None
        self.meta: Optional[VideoMeta] = None
        self.allow_missing = allow_missing
        self._decoded = 0

        if cv2 is None:
            if allow_missing:
                self.logger.warning("OpenCV not available; VideoInput will stay inert.")
                return
            raise ImportError("opencv-python is required for VideoInput")

        if not self.path.exists():
            if allow_missing:
                self.logger.warning("Video %s not found; proceeding inert for testing.", self.path)
                return
            raise SourceReadFailure(f"Video not found: {self.path}")

        self.cap = cv2.VideoCapture(str(self.path))
        if not self.cap.isOpened():
            if allow_missing:
                self.logger.warning("Could not open video %s; proceeding inert for testing.", self.path)
                self.cap = None
                return
            raise SourceReadFailure(f"Could not open video: {self.path}")

        self.meta = VideoMeta(
            fps=float(self.cap.get(cv2.CAP_PROP_FPS) or (frame_rate or 30.0)),
            width=int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            height=int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            frame_count=int(self.cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0),
        )
        self.logger.info(
            "Video opened: %s fps=%.2f size=%dx%d frames=%d",
            self.path,
            self.meta.fps,
            self.meta.width,
            self.meta.height,
            self.meta.frame_count,
        )

    @property
    def width(self) -> int:
        return self.meta.width if self.meta else 0

    @property
    def height(self) -> int:
        return self.meta.height if self.meta else 0

    @property
    def fps(self) -> float:
        if self.meta:
            return self.meta.fps
        return float(self.frame_rate or 30.0)

    @property
    def frame_count(self) -> int:
        return self.meta.frame_count if self.meta else 0

    def _rewind(self) -> None:
        if self.cap is not None and self._decoded:
            self.cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
        self._decoded = 0

    def _read_frame(self, index: int) -> Optional[FramePacket]:
        if self.cap is None:
            return None
        try:
            # Frames the playback clock already passed are decoded and dropped.
            while self._decoded < index:
                if not self.cap.grab():
                    return None
                self._decoded += 1
            ok, frame = self.cap.read()
        except cv2.error as exc:
            raise SourceReadFailure(f"Decoding frame {index} of {self.path} failed: {exc}") from exc
        if not ok:
            return None
        self._decoded += 1
        if frame.shape[1] != self.width or frame.shape[0] != self.height:
            raise SourceReadFailure(
                f"Frame {index} is {frame.shape[1]}x{frame.shape[0]}, expected {self.width}x{self.height}"
            )
        rgba = cv2.cvtColor(frame, cv2.COLOR_BGR2RGBA)
        return FramePacket(frame=rgba, timestamp=index / self.fps, index=index)

    def stop(self) -> None:
        super().stop()
        if self.cap:
            self.cap.release()
            self.cap = None
            self.logger.info("Closed video %s", self.path)
