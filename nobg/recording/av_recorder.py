"""
In-process encoder through PyAV (libav bindings), used when no ffmpeg binary is installed.

Writes the same alpha-capable VP9 ``yuva420p`` WebM as FFmpegRecorder. The
muxer needs a seekable target to write cues, so the container is built in
memory and emitted as one chunk on close.
"""

from __future__ import annotations

import io
from fractions import Fraction
from typing import Dict, Optional

import numpy as np

try:
    import av
except ImportError:
    av = None

from nobg.recording.stream_recorder import StreamRecorder
from nobg.utils.errors import RecorderFlushFailure

_FORMATS = {"webm": ("webm", "video/webm"), "matroska": ("matroska", "video/x-matroska")}


def pyav_available() -> bool:
    return av is not None


class PyAVRecorder(StreamRecorder):
    def __init__(
        self,
        codec: str = "libvpx-vp9",
        pix_fmt: str = "yuva420p",
        container: str = "webm",
        options: Optional[Dict[str, str]] = None,
        queue_size: int = 64,
    ):
        super().__init__(queue_size=queue_size)
        if container not in _FORMATS:
            raise ValueError(f"PyAV recorder supports {sorted(_FORMATS)}, got {container}")
        self.codec = codec
        self.pix_fmt = pix_fmt
        self.container = container
        self.mime_type = _FORMATS[container][1]
        self.options = dict(options or {"crf": "32", "b": "0", "deadline": "realtime", "row-mt": "1"})
        self._buffer: Optional[io.BytesIO] = None
        self._output = None
        self._stream = None

    def _open(self, width: int, height: int, fps: float) -> None:
        if av is None:
            raise RecorderFlushFailure("PyAV is not installed (pip install av)")
        self._buffer = io.BytesIO()
        try:
            self._output = av.open(self._buffer, mode="w", format=_FORMATS[self.container][0])
            stream = self._output.add_stream(self.codec, rate=Fraction(fps).limit_denominator(1001))
            stream.width = width
            stream.height = height
            stream.pix_fmt = self.pix_fmt
            stream.options = self.options
        except Exception as exc:
            self._output = None
            raise RecorderFlushFailure(f"PyAV could not open {self.codec}/{self.container}: {exc}") from exc
        self._stream = stream
        self.logger.debug("PyAV stream: %s %s %dx%d @ %s", self.codec, self.pix_fmt, width, height, stream.rate)

    def _encode(self, frame: np.ndarray) -> None:
        video_frame = av.VideoFrame.from_ndarray(frame, format="rgba")
        video_frame.pts = self.frames_encoded
        for packet in self._stream.encode(video_frame):
            self._output.mux(packet)

    def _close(self) -> None:
        for packet in self._stream.encode():
            self._output.mux(packet)
        self._output.close()
        self._emit(self._buffer.getvalue())
        self._release()

    def _abort(self) -> None:
        if self._output is not None:
            try:
                self._output.close()
            except Exception as exc:
                self.logger.warning("PyAV close after encoder failure: %s", exc)
        self._release()

    def _release(self) -> None:
        self._output = None
        self._stream = None
        self._buffer = None
