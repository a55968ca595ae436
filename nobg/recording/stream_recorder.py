from __future__ import annotations

import abc
import math
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from nobg.recording.surface import RenderSurface
from nobg.utils.errors import RecorderFlushFailure
from nobg.utils.logger import get_logger
from nobg.utils.types import Artifact

_STOP = object()


@dataclass
class RecordingHandle:
    width: int
    height: int
    fps: float
    started_at: float = field(default_factory=time.time)


class StreamRecorder(abc.ABC):
    """
    Incremental encoder fed with composited RGBA frames.

    Frames are encoded on a worker thread in push order and the resulting chunks
    are kept in arrival order. ``stop()`` returns only after every pushed frame
    went through the encoder and the encoder flushed, so the artifact is never
    truncated.

    Frames pushed with a timestamp are placed on a constant-rate output clock
    anchored at the first frame: a gap repeats the previous frame, and a frame
    landing on an already written slot is dropped. Frames pushed without a
    timestamp take the next slot.
    """

    container = "bin"
    mime_type = "application/octet-stream"

    def __init__(self, queue_size: int = 64):
        self.queue_size = int(queue_size)
        self.logger = get_logger(__name__)
        self.handle: Optional[RecordingHandle] = None
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=self.queue_size)
        self._chunks: List[bytes] = []
        self._chunks_lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        self._error: Optional[BaseException] = None
        self._surface: Optional[RenderSurface] = None
        self.frames_pushed = 0
        self.frames_encoded = 0
        self.frames_dropped = 0
        self._t0: Optional[float] = None
        self._next_slot = 0
        self._last_frame: Optional[np.ndarray] = None

    @property
    def started(self) -> bool:
        return self.handle is not None

    def start(self, width: int, height: int, fps: float = 30.0) -> RecordingHandle:
        if self.started:
            raise RuntimeError("recorder already started")
        if width <= 0 or height <= 0 or fps <= 0:
            raise ValueError(f"invalid recording geometry {width}x{height}@{fps}")
        self._queue = queue.Queue(maxsize=self.queue_size)
        self._chunks = []
        self._error = None
        self.frames_pushed = 0
        self.frames_encoded = 0
        self.frames_dropped = 0
        self._t0 = None
        self._next_slot = 0
        self._last_frame = None
        self._open(int(width), int(height), float(fps))
        self.handle = RecordingHandle(width=int(width), height=int(height), fps=float(fps))
        self._worker = threading.Thread(target=self._encode_loop, name=f"{type(self).__name__}-encoder", daemon=True)
        self._worker.start()
        self.logger.info("Recording started: %dx%d @ %.2f fps (%s)", width, height, fps, self.container)
        return self.handle

    def push(self, frame: np.ndarray, timestamp: Optional[float] = None) -> None:
        if not self.started:
            raise RuntimeError("recorder not started")
        if self._error is not None:
            raise RecorderFlushFailure(f"encoder failed: {self._error}")
        expected = (self.handle.height, self.handle.width, 4)
        if frame.shape != expected or frame.dtype != np.uint8:
            raise ValueError(f"expected uint8 frame of shape {expected}, got {frame.dtype} {frame.shape}")

        slot = self._next_slot if timestamp is None else self._slot_at(timestamp)
        if slot < self._next_slot:
            self.frames_dropped += 1
            return
        if slot > self._next_slot and self._last_frame is not None:
            self._enqueue(self._last_frame, slot - self._next_slot)
        buf = np.ascontiguousarray(frame).copy()
        self._enqueue(buf, 1)
        self._last_frame = buf
        self._next_slot = slot + 1

    def _slot_at(self, timestamp: float) -> int:
        if self._t0 is None:
            self._t0 = float(timestamp) - self._next_slot / self.handle.fps
        # Epsilon keeps k / fps on slot k despite float error.
        return int(math.floor((float(timestamp) - self._t0) * self.handle.fps + 1e-6))

    def _enqueue(self, frame: np.ndarray, count: int) -> None:
        # Bounded queue: a slow encoder back-pressures the caller instead of growing memory.
        self._queue.put((frame, count))
        self.frames_pushed += count

    def capture(self, surface: RenderSurface) -> None:
        """Record every image rendered into ``surface`` until stop()."""
        self._surface = surface
        surface.subscribe(self.push)

    def stop(self, end_timestamp: Optional[float] = None) -> Artifact:
        """
        Drain, flush and return the artifact.

        ``end_timestamp`` is the source time at which the last frame stops being
        shown; the last frame is held until then so the output spans the source.
        """
        if not self.started:
            raise RuntimeError("recorder not started")
        handle = self.handle
        if end_timestamp is not None and self._t0 is not None and self._last_frame is not None:
            end_slot = self._slot_at(end_timestamp)
            if end_slot > self._next_slot:
                self._enqueue(self._last_frame, end_slot - self._next_slot)
                self._next_slot = end_slot
        self._last_frame = None
        if self._surface is not None:
            self._surface.unsubscribe(self.push)
            self._surface = None
        self._queue.put(_STOP)
        if self._worker is not None:
            self._worker.join()
            self._worker = None
        try:
            if self._error is None:
                self._close()
            else:
                self._abort()
        except Exception as exc:
            raise RecorderFlushFailure(f"could not finalize {self.container} stream: {exc}") from exc
        finally:
            self.handle = None
        if self._error is not None:
            raise RecorderFlushFailure(f"encoder failed: {self._error}")
        if self.frames_encoded != self.frames_pushed:
            raise RecorderFlushFailure(f"encoded {self.frames_encoded} of {self.frames_pushed} pushed frames")
        with self._chunks_lock:
            data = b"".join(self._chunks)
            self._chunks = []
        self.logger.info(
            "Recording stopped: %d frames (%d dropped), %d bytes", self.frames_encoded, self.frames_dropped, len(data)
        )
        return Artifact(
            data=data,
            width=handle.width,
            height=handle.height,
            fps=handle.fps,
            frame_count=self.frames_encoded,
            container=self.container,
            mime_type=self.mime_type,
        )

    def _emit(self, chunk: bytes) -> None:
        if not chunk:
            return
        with self._chunks_lock:
            self._chunks.append(bytes(chunk))

    def _encode_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            if self._error is not None:
                # Keep draining so producers never block on a dead encoder.
                continue
            frame, count = item
            try:
                for _ in range(count):
                    self._encode(frame)
                    self.frames_encoded += 1
            except Exception as exc:
                self.logger.error("Encoder error after %d frames: %s", self.frames_encoded, exc)
                self._error = exc

    @abc.abstractmethod
    def _open(self, width: int, height: int, fps: float) -> None:
        ...

    @abc.abstractmethod
    def _encode(self, frame: np.ndarray) -> None:
        ...

    @abc.abstractmethod
    def _close(self) -> None:
        """Flush the encoder; every remaining chunk must be emitted before returning."""

    def _abort(self) -> None:
        return
