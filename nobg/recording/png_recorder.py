"""
Lossless RGBA frame stream without external binaries.

Layout (big-endian):
    header   b"NOBGPNG1" | width u32 | height u32 | fps f64
    frame    length u32 | PNG bytes          (repeated)
    trailer  length 0 | frame_count u32
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import List

import cv2
import numpy as np

from nobg.recording.stream_recorder import StreamRecorder

MAGIC = b"NOBGPNG1"
_HEADER = struct.Struct(">IId")
_LENGTH = struct.Struct(">I")


@dataclass
class PngStream:
    width: int
    height: int
    fps: float
    frames: List[np.ndarray]


class PngStreamRecorder(StreamRecorder):
    container = "pngs"
    mime_type = "application/x-nobg-pngs"

    def __init__(self, compression: int = 3, queue_size: int = 64):
        super().__init__(queue_size=queue_size)
        self.compression = int(compression)

    def _open(self, width: int, height: int, fps: float) -> None:
        self._emit(MAGIC + _HEADER.pack(width, height, fps))

    def _encode(self, frame: np.ndarray) -> None:
        bgra = cv2.cvtColor(frame, cv2.COLOR_RGBA2BGRA)
        ok, buf = cv2.imencode(".png", bgra, [cv2.IMWRITE_PNG_COMPRESSION, self.compression])
        if not ok:
            raise RuntimeError("PNG encoding failed")
        payload = buf.tobytes()
        self._emit(_LENGTH.pack(len(payload)) + payload)

    def _close(self) -> None:
        self._emit(_LENGTH.pack(0) + _LENGTH.pack(self.frames_encoded))


def read_png_stream(data: bytes) -> PngStream:
    """Decode a stream written by PngStreamRecorder back into RGBA frames."""
    if not data.startswith(MAGIC):
        raise ValueError("not a nobg PNG stream")
    offset = len(MAGIC)
    width, height, fps = _HEADER.unpack_from(data, offset)
    offset += _HEADER.size
    frames: List[np.ndarray] = []
    while True:
        if offset + _LENGTH.size > len(data):
            raise ValueError("truncated stream: missing trailer")
        (length,) = _LENGTH.unpack_from(data, offset)
        offset += _LENGTH.size
        if length == 0:
            (count,) = _LENGTH.unpack_from(data, offset)
            if count != len(frames):
                raise ValueError(f"trailer announces {count} frames, found {len(frames)}")
            break
        payload = np.frombuffer(data, dtype=np.uint8, count=length, offset=offset)
        offset += length
        bgra = cv2.imdecode(payload, cv2.IMREAD_UNCHANGED)
        if bgra is None:
            raise ValueError(f"corrupt PNG at frame {len(frames)}")
        frames.append(cv2.cvtColor(bgra, cv2.COLOR_BGRA2RGBA))
    return PngStream(width=width, height=height, fps=fps, frames=frames)
