from __future__ import annotations

from typing import Any, Dict, Optional

from nobg.recording.av_recorder import PyAVRecorder, pyav_available
from nobg.recording.ffmpeg_recorder import FFmpegRecorder, find_ffmpeg
from nobg.recording.png_recorder import PngStreamRecorder
from nobg.recording.stream_recorder import StreamRecorder
from nobg.utils.config import get
from nobg.utils.errors import RecorderFlushFailure
from nobg.utils.logger import get_logger

logger = get_logger(__name__)


def resolve_backend(backend: str, ffmpeg_bin: Optional[str] = None) -> str:
    """``auto`` picks a playable encoder: the ffmpeg binary, else PyAV in-process."""
    backend = backend.lower()
    if backend != "auto":
        return backend
    if find_ffmpeg(ffmpeg_bin):
        return "ffmpeg"
    if pyav_available():
        return "pyav"
    raise RecorderFlushFailure("no video encoder available: install ffmpeg or PyAV (pip install av)")


def build_recorder(cfg: Dict[str, Any]) -> StreamRecorder:
    """Recorder from the ``recorder`` config section. ``png`` is a lossless debug stream, never picked by ``auto``."""
    ffmpeg_bin = get(cfg, "recorder.ffmpeg_bin", None)
    queue_size = int(get(cfg, "recorder.queue_size", 64))
    backend = resolve_backend(str(get(cfg, "recorder.backend", "auto")), ffmpeg_bin)
    logger.info("Recorder backend: %s", backend)

    if backend == "ffmpeg":
        extra = get(cfg, "recorder.extra_args", None)
        kwargs = {} if extra is None else {"extra_args": [str(a) for a in extra]}
        return FFmpegRecorder(
            ffmpeg_bin=ffmpeg_bin,
            codec=str(get(cfg, "recorder.codec", "libvpx-vp9")),
            pix_fmt=str(get(cfg, "recorder.pix_fmt", "yuva420p")),
            container=str(get(cfg, "recorder.container", "webm")),
            queue_size=queue_size,
            **kwargs,
        )
    if backend == "pyav":
        return PyAVRecorder(
            codec=str(get(cfg, "recorder.codec", "libvpx-vp9")),
            pix_fmt=str(get(cfg, "recorder.pix_fmt", "yuva420p")),
            container=str(get(cfg, "recorder.container", "webm")),
            queue_size=queue_size,
        )
    if backend == "png":
        return PngStreamRecorder(compression=int(get(cfg, "recorder.png_compression", 3)), queue_size=queue_size)
    raise ValueError(f"Unknown recorder backend: {backend}")
