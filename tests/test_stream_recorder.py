import time

import numpy as np
import pytest

from nobg.recording import factory
from nobg.recording.av_recorder import PyAVRecorder
from nobg.recording.factory import build_recorder
from nobg.recording.ffmpeg_recorder import FFmpegRecorder, find_ffmpeg
from nobg.recording.png_recorder import PngStreamRecorder, read_png_stream
from nobg.recording.stream_recorder import StreamRecorder
from nobg.recording.surface import RenderSurface
from nobg.utils.errors import RecorderFlushFailure

H, W = 12, 16


def frame(i):
    f = np.zeros((H, W, 4), dtype=np.uint8)
    f[..., 0] = i
    f[: i % H, :, 3] = 255
    return f


class SlowRecorder(StreamRecorder):
    container = "raw"

    def __init__(self, delay_s=0.01, fail_at=None):
        super().__init__(queue_size=4)
        self.delay_s = delay_s
        self.fail_at = fail_at
        self.closed = False

    def _open(self, width, height, fps):
        return

    def _encode(self, f):
        if self.fail_at is not None and self.frames_encoded == self.fail_at:
            raise RuntimeError("encoder exploded")
        time.sleep(self.delay_s)
        self._emit(f.tobytes())

    def _close(self):
        time.sleep(self.delay_s)
        self._emit(b"END")
        self.closed = True


def test_stop_waits_for_every_pushed_frame():
    rec = SlowRecorder(delay_s=0.01)
    rec.start(W, H, 30)
    for i in range(20):
        rec.push(frame(i))
    artifact = rec.stop()
    assert rec.closed
    assert artifact.frame_count == 20
    assert len(artifact.data) == 20 * H * W * 4 + 3
    assert artifact.data.endswith(b"END")


def test_chunks_keep_push_order():
    rec = SlowRecorder(delay_s=0.0)
    rec.start(W, H, 30)
    for i in range(5):
        rec.push(frame(i))
    data = rec.stop().data
    size = H * W * 4
    firsts = [data[k * size] for k in range(5)]
    assert firsts == [0, 1, 2, 3, 4]


def test_artifact_duration_matches_frames_over_rate():
    rec = SlowRecorder(delay_s=0.0)
    rec.start(W, H, 25)
    for i in range(50):
        rec.push(frame(i))
    artifact = rec.stop()
    assert artifact.duration_s == pytest.approx(2.0)


def test_push_requires_start_and_matching_geometry():
    rec = SlowRecorder()
    with pytest.raises(RuntimeError):
        rec.push(frame(0))
    rec.start(W, H, 30)
    with pytest.raises(ValueError):
        rec.push(np.zeros((H, W, 3), dtype=np.uint8))
    rec.stop()


def test_encoder_failure_surfaces_as_flush_failure():
    rec = SlowRecorder(delay_s=0.0, fail_at=2)
    rec.start(W, H, 30)
    for i in range(3):
        rec.push(frame(i))
    with pytest.raises(RecorderFlushFailure):
        rec.stop()
    assert not rec.started


def test_surface_capture_records_each_render():
    surface = RenderSurface(W, H)
    rec = SlowRecorder(delay_s=0.0)
    rec.start(W, H, 30)
    rec.capture(surface)
    for i in range(4):
        surface.put_image(frame(i))
    artifact = rec.stop()
    surface.put_image(frame(9))  # no longer captured
    assert artifact.frame_count == 4
    assert surface.renders == 5


def test_png_stream_preserves_exact_alpha():
    rec = PngStreamRecorder()
    rec.start(W, H, 30)
    sent = [frame(i) for i in range(3)]
    for f in sent:
        rec.push(f)
    artifact = rec.stop()
    assert artifact.container == "pngs"
    stream = read_png_stream(artifact.data)
    assert (stream.width, stream.height, stream.fps) == (W, H, 30.0)
    assert len(stream.frames) == 3
    for got, want in zip(stream.frames, sent):
        assert np.array_equal(got, want)


def test_truncated_png_stream_is_rejected():
    rec = PngStreamRecorder()
    rec.start(W, H, 30)
    rec.push(frame(1))
    data = rec.stop().data
    with pytest.raises(ValueError):
        read_png_stream(data[:-8])


def test_factory_builds_png_backend():
    rec = build_recorder({"recorder": {"backend": "png"}})
    assert isinstance(rec, PngStreamRecorder)
    with pytest.raises(ValueError):
        build_recorder({"recorder": {"backend": "gif"}})


def test_missing_ffmpeg_binary_fails_at_start():
    rec = FFmpegRecorder(ffmpeg_bin="nobg-no-such-ffmpeg-binary")
    with pytest.raises(RecorderFlushFailure):
        rec.start(W, H, 30)
    assert not rec.started


@pytest.mark.skipif(find_ffmpeg() is None, reason="ffmpeg not installed")
def test_ffmpeg_recorder_produces_webm():
    rec = FFmpegRecorder()
    rec.start(32, 32, 30)
    for i in range(15):
        f = np.zeros((32, 32, 4), dtype=np.uint8)
        f[..., 1] = 200
        f[:16, :, 3] = 255
        rec.push(f)
    artifact = rec.stop()
    assert artifact.frame_count == 15
    assert artifact.mime_type == "video/webm"
    # EBML header of a Matroska/WebM file.
    assert artifact.data[:4] == b"\x1a\x45\xdf\xa3"


def test_timestamps_fill_gaps_with_previous_frame():
    rec = SlowRecorder(delay_s=0.0)
    rec.start(W, H, 10)
    rec.push(frame(1), timestamp=5.0)
    rec.push(frame(2), timestamp=5.3)
    artifact = rec.stop(end_timestamp=5.5)
    size = H * W * 4
    firsts = [artifact.data[k * size] for k in range(artifact.frame_count)]
    assert firsts == [1, 1, 1, 2, 2]
    assert artifact.duration_s == pytest.approx(0.5)


def test_frames_sharing_an_output_slot_are_dropped():
    rec = SlowRecorder(delay_s=0.0)
    rec.start(W, H, 30)
    for i in range(60):
        rec.push(frame(i), timestamp=i / 60.0)
    artifact = rec.stop(end_timestamp=1.0)
    assert artifact.frame_count == 30
    assert rec.frames_dropped == 30
    assert artifact.duration_s == pytest.approx(1.0)


def test_auto_backend_without_any_encoder_fails(monkeypatch):
    monkeypatch.setattr(factory, "find_ffmpeg", lambda *_: None)
    monkeypatch.setattr(factory, "pyav_available", lambda: False)
    with pytest.raises(RecorderFlushFailure):
        build_recorder({"recorder": {"backend": "auto"}})


def test_auto_backend_falls_back_to_pyav(monkeypatch):
    monkeypatch.setattr(factory, "find_ffmpeg", lambda *_: None)
    monkeypatch.setattr(factory, "pyav_available", lambda: True)
    assert isinstance(build_recorder({"recorder": {}}), PyAVRecorder)


def test_pyav_recorder_produces_webm():
    av = pytest.importorskip("av")
    if "libvpx-vp9" not in av.codecs_available:
        pytest.skip("PyAV build without libvpx-vp9")
    rec = PyAVRecorder()
    rec.start(32, 32, 30)
    for i in range(10):
        f = np.zeros((32, 32, 4), dtype=np.uint8)
        f[..., 2] = 180
        f[:, :16, 3] = 255
        rec.push(f, timestamp=i / 30.0)
    artifact = rec.stop(end_timestamp=10 / 30.0)
    assert artifact.frame_count == 10
    assert artifact.mime_type == "video/webm"
    assert artifact.data[:4] == b"\x1a\x45\xdf\xa3"
