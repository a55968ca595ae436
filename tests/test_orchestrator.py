import asyncio
import threading

import numpy as np
import pytest

from nobg.inputs.array_input import ArrayInput
from nobg.inputs.base_input import PlaybackClock
from nobg.inputs.video_input import VideoInput
from nobg.perception.segmentation.base_segmenter import BaseSegmenter
from nobg.recording.png_recorder import PngStreamRecorder, read_png_stream
from nobg.recording.stream_recorder import StreamRecorder
from nobg.recording.surface import RenderSurface
from nobg.runtime.orchestrator import Orchestrator
from nobg.runtime.states import RunState
from nobg.utils.config import PipelineConfig
from nobg.utils.errors import ErrorKind, ModelLoadFailure
from nobg.utils.types import Region

H, W = 20, 24


def clip(n):
    rng = np.random.default_rng(n)
    return [rng.integers(0, 256, size=(H, W, 4), dtype=np.uint8) for _ in range(n)]


def top_left(size=10):
    conf = np.zeros((H, W), dtype=np.float32)
    conf[:size, :size] = 1.0
    return [Region(confidence=conf)]


class ScriptedSegmenter(BaseSegmenter):
    """Returns scripted results in call order; exceptions in the script are raised."""

    def __init__(self, script, default=None, on_call=None):
        self.script = list(script)
        self.default = default
        self.on_call = on_call
        self.calls = 0

    def infer(self, frame):
        self.calls += 1
        if self.on_call is not None:
            self.on_call(self.calls)
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, Exception):
            raise item
        return item or []


class MemoryRecorder(StreamRecorder):
    container = "raw"

    def __init__(self):
        super().__init__()
        self.frames = []
        self.starts = 0

    def _open(self, width, height, fps):
        self.starts += 1
        self.frames = []

    def _encode(self, frame):
        self.frames.append(frame)
        self._emit(frame.tobytes())

    def _close(self):
        return


def run_pipeline(frames, segmenter, recorder=None, cfg=None, surface=None):
    recorder = recorder or MemoryRecorder()
    orch = Orchestrator(segmenter, recorder, cfg or PipelineConfig(), surface=surface)
    events = []
    orch.subscribe(events.append)
    run = orch.process(ArrayInput(frames, fps=30.0, realtime=False))
    return run, recorder, events


def states(events):
    return [e.state for e in events if e.type == "state"]


def test_full_clip_completes_once_with_expected_duration():
    run, rec, events = run_pipeline(clip(12), ScriptedSegmenter([], default=top_left()))
    assert run.state == RunState.COMPLETED
    assert states(events) == [
        RunState.INITIALIZING,
        RunState.READY,
        RunState.RUNNING,
        RunState.FINALIZING,
        RunState.COMPLETED,
    ]
    assert states(events).count(RunState.COMPLETED) == 1
    assert run.artifact.frame_count == 12
    assert run.artifact.duration_s == pytest.approx(12 / 30.0)
    assert (run.artifact.width, run.artifact.height) == (W, H)


def test_cached_mask_bridges_empty_frames():
    frames = clip(3)
    run, rec, _ = run_pipeline(frames, ScriptedSegmenter([top_left(), [], []]), cfg=PipelineConfig(threshold=0.6))
    assert run.succeeded
    assert len(rec.frames) == 3
    expected = np.zeros((H, W), dtype=np.uint8)
    expected[:10, :10] = 255
    for out, src in zip(rec.frames, frames):
        assert np.array_equal(out[..., 3], expected)
        assert np.array_equal(out[..., :3], src[..., :3])
    assert run.metrics.cache_reuses == 2


def test_output_alpha_is_binary():
    conf = np.random.default_rng(3).random((H, W)).astype(np.float32)
    run, rec, _ = run_pipeline(clip(4), ScriptedSegmenter([], default=[Region(confidence=conf)]))
    for out in rec.frames:
        assert set(np.unique(out[..., 3]).tolist()) <= {0, 255}


def test_nothing_recorded_until_first_detection():
    run, rec, _ = run_pipeline(clip(4), ScriptedSegmenter([[], [], top_left(), []]))
    assert run.succeeded
    assert len(rec.frames) == 2
    assert run.metrics.frames_skipped == 2
    assert run.metrics.frames_emitted == 2


def test_no_detection_at_all_ends_errored():
    run, rec, _ = run_pipeline(clip(3), ScriptedSegmenter([], default=[]))
    assert run.state == RunState.ERRORED
    assert run.error_kind == ErrorKind.RECORDER_FLUSH_FAILURE
    assert run.error_message.startswith("no frame was composited")
    assert run.artifact is None


def test_segmentation_failure_is_treated_as_empty():
    script = [top_left(), RuntimeError("gpu hiccup"), []]
    run, rec, _ = run_pipeline(clip(3), ScriptedSegmenter(script))
    assert run.succeeded
    assert len(rec.frames) == 3
    assert run.metrics.segmentation_failures == 1
    assert np.array_equal(rec.frames[1][..., 3], rec.frames[0][..., 3])


def test_invalid_dimensions_never_start_recorder():
    rec = MemoryRecorder()
    orch = Orchestrator(ScriptedSegmenter([], default=top_left()), rec)
    events = []
    orch.subscribe(events.append)
    run = orch.process(VideoInput("/tmp/nobg_missing_clip.mp4", allow_missing=True))
    assert run.state == RunState.ERRORED
    assert run.error_kind == ErrorKind.INVALID_SOURCE_DIMENSIONS
    assert states(events) == [RunState.INITIALIZING, RunState.ERRORED]
    assert rec.starts == 0


class BrokenModel(ScriptedSegmenter):
    def __init__(self, exc):
        super().__init__([])
        self.exc = exc

    def load(self):
        raise self.exc


@pytest.mark.parametrize("exc", [ModelLoadFailure("weights missing"), OSError("disk gone")])
def test_model_load_failure(exc):
    rec = MemoryRecorder()
    run, _, events = run_pipeline(clip(2), BrokenModel(exc), recorder=rec)
    assert run.state == RunState.ERRORED
    assert run.error_kind == ErrorKind.MODEL_LOAD_FAILURE
    assert rec.starts == 0


def test_abort_mid_run_keeps_partial_output():
    holder = {}

    def abort_on_second(call):
        if call == 2:
            holder["orch"].abort()

    seg = ScriptedSegmenter([], default=top_left(), on_call=abort_on_second)
    rec = PngStreamRecorder()
    orch = Orchestrator(seg, rec)
    holder["orch"] = orch
    run = orch.process(ArrayInput(clip(10), realtime=False))
    assert run.state == RunState.COMPLETED
    assert run.aborted
    assert run.artifact.frame_count == 2
    assert len(read_png_stream(run.artifact.data).frames) == 2


class FailingRecorder(MemoryRecorder):
    def _close(self):
        raise OSError("disk full")


def test_recorder_flush_failure_ends_errored():
    run, _, events = run_pipeline(clip(3), ScriptedSegmenter([], default=top_left()), recorder=FailingRecorder())
    assert run.state == RunState.ERRORED
    assert run.error_kind == ErrorKind.RECORDER_FLUSH_FAILURE
    assert states(events)[-2:] == [RunState.FINALIZING, RunState.ERRORED]


class HangingSegmenter(BaseSegmenter):
    """Second call hangs; tracks how many calls overlap."""

    loaded = True

    def __init__(self):
        self.calls = 0
        self.inflight = 0
        self.max_inflight = 0

    def infer(self, frame):
        raise NotImplementedError

    async def segment(self, frame):
        self.calls += 1
        self.inflight += 1
        self.max_inflight = max(self.max_inflight, self.inflight)
        try:
            if self.calls == 2:
                await asyncio.sleep(30)
            return top_left()
        finally:
            self.inflight -= 1


def test_timed_out_call_counts_as_empty_and_never_overlaps():
    seg = HangingSegmenter()
    cfg = PipelineConfig(segmentation_timeout_s=0.05)
    run, rec, _ = run_pipeline(clip(6), seg, cfg=cfg)
    assert run.succeeded
    assert len(rec.frames) == 6
    assert seg.max_inflight == 1
    assert seg.calls == 2
    assert run.metrics.segmentation_timeouts == 5


def test_surface_capture_mode_records_rendered_frames():
    surface = RenderSurface()
    run, rec, _ = run_pipeline(clip(5), ScriptedSegmenter([], default=top_left()), surface=surface)
    assert run.succeeded
    assert surface.renders == 5
    assert len(rec.frames) == 5
    assert (surface.width, surface.height) == (W, H)


def test_progress_events_and_failing_subscriber():
    rec = MemoryRecorder()
    orch = Orchestrator(ScriptedSegmenter([], default=top_left()), rec)
    progress = []

    def broken(event):
        raise RuntimeError("ui went away")

    orch.subscribe(broken)
    orch.subscribe(lambda e: progress.append(e.frame_index) if e.type == "progress" else None)
    run = orch.process(ArrayInput(clip(4), realtime=False))
    assert run.succeeded
    assert progress == [0, 1, 2, 3]


def test_mask_cache_does_not_leak_between_runs():
    rec = MemoryRecorder()
    seg = ScriptedSegmenter([top_left()], default=[])
    orch = Orchestrator(seg, rec)
    first = orch.process(ArrayInput(clip(2), realtime=False))
    second = orch.process(ArrayInput(clip(2), realtime=False))
    assert first.succeeded
    assert second.state == RunState.ERRORED
    assert not orch.active


@pytest.mark.parametrize("source_fps,n", [(60.0, 60), (24.0, 24), (15.0, 30)])
def test_duration_follows_source_rate(source_fps, n):
    rec = MemoryRecorder()
    orch = Orchestrator(ScriptedSegmenter([], default=top_left()), rec, PipelineConfig(fps=30.0))
    run = orch.process(ArrayInput(clip(n), fps=source_fps, realtime=False))
    assert run.succeeded
    assert run.metrics.frames_emitted == n
    assert run.artifact.duration_s == pytest.approx(n / source_fps)


class ManualClock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


def test_realtime_slow_segmentation_drops_frames_but_keeps_timeline():
    clock = ManualClock()
    frames = clip(30)

    def slow(call):
        clock.t += 0.07

    seg = ScriptedSegmenter([], default=top_left(), on_call=slow)
    rec = MemoryRecorder()
    orch = Orchestrator(seg, rec, PipelineConfig(fps=30.0))
    run = orch.process(ArrayInput(frames, fps=30.0, realtime=True, clock=PlaybackClock(now=clock)))

    assert run.succeeded
    assert run.metrics.frames_emitted < 30
    assert seg.calls == run.metrics.frames_polled
    assert run.artifact.frame_count == 30
    assert run.artifact.duration_s == pytest.approx(1.0)

    # Every output slot shows the latest composited source frame at or before it.
    shown = []
    for slot, out in enumerate(rec.frames):
        match = [j for j, src in enumerate(frames) if np.array_equal(out[..., :3], src[..., :3])]
        assert len(match) == 1
        assert match[0] <= slot
        shown.append(match[0])
    assert shown == sorted(shown)
    assert shown[0] == 0


class ThreadRecordingRecorder(MemoryRecorder):
    def __init__(self):
        super().__init__()
        self.push_threads = set()

    def push(self, frame, timestamp=None):
        self.push_threads.add(threading.get_ident())
        super().push(frame, timestamp)


def test_frames_are_pushed_off_the_event_loop_thread():
    rec = ThreadRecordingRecorder()
    run = Orchestrator(ScriptedSegmenter([], default=top_left()), rec).process(ArrayInput(clip(3), realtime=False))
    assert run.succeeded
    assert rec.push_threads
    assert threading.get_ident() not in rec.push_threads
