from __future__ import annotations

import threading
from typing import Callable, List, Optional

import numpy as np

FrameListener = Callable[[np.ndarray, Optional[float]], None]


class RenderSurface:
    """
    Shared RGBA drawing target.

    The orchestrator renders each composited frame here; recorders attached with
    ``StreamRecorder.capture`` receive every rendered image, in render order.
    """

    def __init__(self, width: int = 0, height: int = 0):
        self._lock = threading.Lock()
        self._listeners: List[FrameListener] = []
        self.image: Optional[np.ndarray] = None
        self.renders = 0
        if width > 0 and height > 0:
            self.resize(width, height)

    def resize(self, width: int, height: int) -> None:
        with self._lock:
            self.image = np.zeros((int(height), int(width), 4), dtype=np.uint8)

    @property
    def width(self) -> int:
        return 0 if self.image is None else int(self.image.shape[1])

    @property
    def height(self) -> int:
        return 0 if self.image is None else int(self.image.shape[0])

    def subscribe(self, listener: FrameListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: FrameListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def put_image(self, frame: np.ndarray, timestamp: Optional[float] = None) -> None:
        with self._lock:
            if self.image is None or self.image.shape != frame.shape:
                self.image = np.empty_like(frame)
            np.copyto(self.image, frame)
            self.renders += 1
            listeners = list(self._listeners)
            snapshot = self.image
        for listener in listeners:
            listener(snapshot, timestamp)

    def snapshot(self) -> Optional[np.ndarray]:
        with self._lock:
            return None if self.image is None else self.image.copy()
