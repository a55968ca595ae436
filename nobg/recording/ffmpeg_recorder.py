"""
FFmpeg streaming encoder: RGBA rawvideo on stdin -> alpha-capable container on stdout.

stdout is drained by a reader thread into the recorder's chunk list while frames
are still being written, so the pipe never stalls and chunks stay in arrival order.
"""

from __future__ import annotations

import shutil
import subprocess
import threading
from typing import List, Optional, Sequence

import numpy as np

from nobg.recording.stream_recorder import StreamRecorder
from nobg.utils.errors import RecorderFlushFailure

_CONTAINER_MIME = {
    "webm": "video/webm",
    "matroska": "video/x-matroska",
    "mov": "video/quicktime",
}


def find_ffmpeg(ffmpeg_bin: Optional[str] = None) -> Optional[str]:
    return shutil.which(ffmpeg_bin or "ffmpeg")


class FFmpegRecorder(StreamRecorder):
    def __init__(
        self,
        ffmpeg_bin: Optional[str] = None,
        codec: str = "libvpx-vp9",
        pix_fmt: str = "yuva420p",
        container: str = "webm",
        extra_args: Sequence[str] = ("-b:v", "0", "-crf", "32", "-deadline", "realtime", "-row-mt", "1"),
        read_chunk_size: int = 64 * 1024,
        close_timeout_s: float = 60.0,
        queue_size: int = 64,
    ):
        super().__init__(queue_size=queue_size)
        self.ffmpeg_bin = ffmpeg_bin or "ffmpeg"
        self.codec = codec
        self.pix_fmt = pix_fmt
        self.container = container
        self.mime_type = _CONTAINER_MIME.get(container, "application/octet-stream")
        self.extra_args = list(extra_args)
        self.read_chunk_size = int(read_chunk_size)
        self.close_timeout_s = float(close_timeout_s)
        self.process: Optional[subprocess.Popen] = None
        self._readers: List[threading.Thread] = []
        self._stderr: List[bytes] = []

    def build_cmd(self, width: int, height: int, fps: float) -> List[str]:
        return [
            self.ffmpeg_bin,
            "-hide_banner",
            "-loglevel", "error",
            "-f", "rawvideo",
            "-pixel_format", "rgba",
            "-video_size", f"{width}x{height}",
            "-framerate", f"{fps:g}",
            "-i", "pipe:0",
            "-an",
            "-c:v", self.codec,
            "-pix_fmt", self.pix_fmt,
            *self.extra_args,
            "-f", self.container,
            "pipe:1",
        ]

    def _open(self, width: int, height: int, fps: float) -> None:
        binary = find_ffmpeg(self.ffmpeg_bin)
        if binary is None:
            raise RecorderFlushFailure(f"ffmpeg binary not found: {self.ffmpeg_bin}")
        cmd = self.build_cmd(width, height, fps)
        cmd[0] = binary
        self.logger.debug("FFmpeg command: %s", " ".join(cmd))
        self.process = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
        )
        self._stderr = []
        self._readers = [
            threading.Thread(target=self._read_stdout, name="ffmpeg-stdout", daemon=True),
            threading.Thread(target=self._read_stderr, name="ffmpeg-stderr", daemon=True),
        ]
        for reader in self._readers:
            reader.start()

    def _read_stdout(self) -> None:
        stream = self.process.stdout
        while True:
            chunk = stream.read(self.read_chunk_size)
            if not chunk:
                return
            self._emit(chunk)

    def _read_stderr(self) -> None:
        for line in iter(self.process.stderr.readline, b""):
            self._stderr.append(line)

    def _encode(self, frame: np.ndarray) -> None:
        try:
            self.process.stdin.write(frame.tobytes())
        except (BrokenPipeError, OSError) as exc:
            raise RecorderFlushFailure(f"ffmpeg closed its input: {self._stderr_tail() or exc}") from exc

    def _close(self) -> None:
        process = self.process
        try:
            process.stdin.close()
        except (BrokenPipeError, OSError):
            pass
        try:
            returncode = process.wait(timeout=self.close_timeout_s)
        except subprocess.TimeoutExpired as exc:
            process.kill()
            process.wait()
            raise RecorderFlushFailure(f"ffmpeg did not finish within {self.close_timeout_s:.0f}s") from exc
        finally:
            self._join_readers()
            self.process = None
        if returncode != 0:
            raise RecorderFlushFailure(f"ffmpeg exited with {returncode}: {self._stderr_tail()}")

    def _abort(self) -> None:
        if self.process is None:
            return
        self.process.kill()
        self.process.wait()
        self._join_readers()
        self.process = None

    def _join_readers(self) -> None:
        for reader in self._readers:
            reader.join()
        self._readers = []

    def _stderr_tail(self, lines: int = 5) -> str:
        return b"".join(self._stderr[-lines:]).decode("utf-8", errors="replace").strip()
