from __future__ import annotations

import asyncio
import threading
import time
from typing import Callable, List, Optional

from nobg.compositing.mask_cache import MaskCache
from nobg.compositing.mask_compositor import MaskCompositor, MaskSource
from nobg.inputs.base_input import BaseInput
from nobg.perception.segmentation.base_segmenter import BaseSegmenter
from nobg.recording.stream_recorder import StreamRecorder
from nobg.recording.surface import RenderSurface
from nobg.runtime.health_monitor import HealthMonitor
from nobg.runtime.states import PipelineRun, RunEvent, RunState
from nobg.utils.config import PipelineConfig
from nobg.utils.errors import (
    ModelLoadFailure,
    PipelineError,
    RecorderFlushFailure,
    SourceReadFailure,
)
from nobg.utils.logger import get_logger
from nobg.utils.timing import FPSMeter, LatencyStats
from nobg.utils.types import FramePacket, RunMetrics, SegmentationResult, SourceStatus

EventCallback = Callable[[RunEvent], None]


def _consume_result(task: asyncio.Future) -> None:
    # Late results of abandoned calls are dropped; retrieve them so asyncio stays quiet.
    if not task.cancelled():
        task.exception()


class Orchestrator:
    """
    Owns one background-removal run at a time:

        IDLE -> INITIALIZING -> READY -> RUNNING -> FINALIZING -> COMPLETED
                     |                     |            |
                     +---------------------+------------+--> ERRORED

    The frame loop polls the source, which plays back on its own clock; frames
    that go by while a segmentation call is in flight are dropped, never queued.
    At most one segmentation call is outstanding. Per-frame segmentation errors
    count as "no detection"; source, recorder and model-load errors end the run.
    """

    def __init__(
        self,
        segmenter: BaseSegmenter,
        recorder: StreamRecorder,
        cfg: Optional[PipelineConfig] = None,
        surface: Optional[RenderSurface] = None,
        logger=None,
    ):
        self.segmenter = segmenter
        self.recorder = recorder
        self.cfg = cfg or PipelineConfig()
        self.surface = surface
        self.logger = logger or get_logger(__name__)
        self.health = HealthMonitor({"latency_budget_ms": self.cfg.latency_budget_ms})
        self.current_run: Optional[PipelineRun] = None
        self._subscribers: List[EventCallback] = []
        self._abort = threading.Event()
        self._active = False
        self._inflight: Optional[asyncio.Future] = None

    # ------------------------------------------------------------------ events
    def subscribe(self, callback: EventCallback) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def _publish(self, event: RunEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                self.logger.exception("Run event subscriber failed on %s", event.type)

    def _transition(self, run: PipelineRun, state: RunState, message: str = "", error_kind=None) -> None:
        previous = run.transition(state)
        self.logger.info("[RUN] %s -> %s%s", previous.value, state.value, f" ({message})" if message else "")
        self._publish(
            RunEvent(
                type="state",
                state=state,
                previous=previous,
                frame_index=run.metrics.frames_polled,
                frames_emitted=run.metrics.frames_emitted,
                frame_count=run.frame_count,
                message=message,
                error_kind=error_kind,
            )
        )

    def _fail(self, run: PipelineRun, exc: PipelineError) -> PipelineRun:
        run.error_kind = exc.kind
        run.error_message = exc.message
        self.logger.error("[RUN] %s", exc)
        self._transition(run, RunState.ERRORED, message=exc.message, error_kind=exc.kind)
        return run

    # ----------------------------------------------------------------- control
    @property
    def active(self) -> bool:
        return self._active

    def abort(self) -> None:
        """Stop after the current step; the recording is still flushed. Safe from any thread."""
        self._abort.set()

    def process(self, source: BaseInput) -> PipelineRun:
        """Blocking wrapper around ``run`` for callers without an event loop."""
        return asyncio.run(self.run(source))

    async def run(self, source: BaseInput) -> PipelineRun:
        if self._active:
            raise RuntimeError("a run is already active on this orchestrator")
        self._active = True
        self._abort.clear()
        run = PipelineRun(fps=self.cfg.fps)
        self.current_run = run
        compositor = MaskCompositor(threshold=self.cfg.threshold, cache=MaskCache())
        try:
            return await self._run(run, source, compositor)
        finally:
            await self._drop_inflight()
            self._discard_recording()
            source.stop()
            compositor.reset()
            self._active = False

    async def _run(self, run: PipelineRun, source: BaseInput, compositor: MaskCompositor) -> PipelineRun:
        self._transition(run, RunState.INITIALIZING)
        try:
            await self._initialize(run, source)
        except PipelineError as exc:
            return self._fail(run, exc)
        self._transition(run, RunState.READY, message=f"{run.width}x{run.height}")

        self._transition(run, RunState.RUNNING)
        try:
            self.recorder.start(run.width, run.height, run.fps)
            if self.surface is not None:
                self.surface.resize(run.width, run.height)
                self.recorder.capture(self.surface)
            source.start()
            end_timestamp = await self._frame_loop(run, source, compositor)
        except PipelineError as exc:
            self._discard_recording()
            return self._fail(run, exc)

        self._transition(run, RunState.FINALIZING, message="aborted" if run.aborted else "end of stream")
        try:
            artifact = await asyncio.to_thread(self.recorder.stop, end_timestamp)
        except PipelineError as exc:
            return self._fail(run, exc)
        if run.metrics.frames_emitted == 0:
            return self._fail(
                run,
                RecorderFlushFailure(
                    f"no frame was composited (no detection in {run.metrics.frames_polled} polled frames); "
                    "the recording is empty"
                ),
            )
        if artifact.frame_count == 0 or not artifact.data:
            return self._fail(run, RecorderFlushFailure("recorder produced an empty artifact"))
        run.artifact = artifact
        self._transition(
            run,
            RunState.COMPLETED,
            message=f"{artifact.frame_count} frames, {len(artifact)} bytes, {artifact.duration_s:.2f}s",
        )
        return run

    async def _initialize(self, run: PipelineRun, source: BaseInput) -> None:
        if not self.segmenter.loaded:
            try:
                await asyncio.to_thread(self.segmenter.load)
            except Exception as exc:
                if isinstance(exc, ModelLoadFailure):
                    raise
                raise ModelLoadFailure(f"{type(self.segmenter).__name__}: {exc}") from exc
        source.validate_dimensions()
        run.width = source.width
        run.height = source.height
        run.source_fps = source.fps
        run.frame_count = source.frame_count

    # -------------------------------------------------------------- frame loop
    async def _frame_loop(self, run: PipelineRun, source: BaseInput, compositor: MaskCompositor) -> Optional[float]:
        """Run until end of stream or abort; returns the source time the output should span to."""
        metrics = run.metrics
        fps_meter = FPSMeter()
        latency = LatencyStats()
        frame_period = 1.0 / source.fps if source.fps > 0 else 0.0
        end_timestamp: Optional[float] = None
        while True:
            if self._abort.is_set():
                run.aborted = True
                self.logger.info("[RUN] abort requested after %d emitted frames", metrics.frames_emitted)
                break
            poll = source.current_frame()
            if poll is SourceStatus.END_OF_STREAM:
                if source.frame_count and frame_period:
                    # Trailing frames skipped by realtime playback still span the output.
                    end_timestamp = source.frame_count * frame_period
                break
            if poll is SourceStatus.NOT_READY:
                await asyncio.sleep(self.cfg.poll_interval_s)
                continue

            packet: FramePacket = poll
            metrics.frames_polled += 1
            if packet.width != run.width or packet.height != run.height:
                raise SourceReadFailure(
                    f"frame {packet.index} is {packet.width}x{packet.height}, run is {run.width}x{run.height}"
                )

            regions = await self._segment(packet, metrics, latency)
            result = compositor.process(packet.frame, regions)
            if result.source == MaskSource.CACHED:
                metrics.cache_reuses += 1
            end_timestamp = packet.timestamp + frame_period
            if result.emitted:
                await self._render(result.frame, packet.timestamp)
                metrics.frames_emitted += 1
                metrics.processing_fps = fps_meter.tick()
                self._publish(
                    RunEvent(
                        type="progress",
                        state=run.state,
                        frame_index=packet.index,
                        frames_emitted=metrics.frames_emitted,
                        frame_count=run.frame_count,
                    )
                )
            else:
                metrics.frames_skipped += 1

            source.advance()
            await asyncio.sleep(0)

        metrics.mean_segmentation_ms = latency.mean_ms
        metrics.slow_segmentations = self.health.misses
        if metrics.segmentation_failures:
            metrics.warnings.append(f"{metrics.segmentation_failures} segmentation failures treated as empty")
        if metrics.segmentation_timeouts:
            metrics.warnings.append(f"{metrics.segmentation_timeouts} segmentation calls timed out or were busy")
        return end_timestamp

    async def _segment(self, packet: FramePacket, metrics: RunMetrics, latency: LatencyStats) -> SegmentationResult:
        if self._inflight is not None:
            if not self._inflight.done():
                # Previous call outlived its timeout; never overlap a second one.
                metrics.segmentation_timeouts += 1
                return []
            self._inflight = None

        start = time.perf_counter()
        task = asyncio.ensure_future(self.segmenter.segment(packet.frame))
        done, _ = await asyncio.wait({task}, timeout=self.cfg.segmentation_timeout_s)
        if task not in done:
            task.add_done_callback(_consume_result)
            self._inflight = task
            metrics.segmentation_timeouts += 1
            self.logger.warning(
                "Segmentation of frame %d exceeded %.2fs; treating as empty", packet.index, self.cfg.segmentation_timeout_s
            )
            return []

        exc = task.exception()
        if exc is not None:
            metrics.segmentation_failures += 1
            self.logger.warning("Segmentation failed on frame %d, treating as empty: %s", packet.index, exc)
            return []

        elapsed_ms = (time.perf_counter() - start) * 1000.0
        latency.add(elapsed_ms)
        self.health.check_latency(elapsed_ms)
        metrics.frames_segmented += 1
        return list(task.result() or [])

    async def _render(self, frame, timestamp: float) -> None:
        # The recorder queue is bounded; a full queue must block a worker thread, not the loop.
        if self.surface is not None:
            await asyncio.to_thread(self.surface.put_image, frame, timestamp)
        else:
            await asyncio.to_thread(self.recorder.push, frame, timestamp)

    # ----------------------------------------------------------------- cleanup
    async def _drop_inflight(self) -> None:
        task = self._inflight
        self._inflight = None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def _discard_recording(self) -> None:
        if not self.recorder.started:
            return
        try:
            self.recorder.stop()
        except PipelineError as exc:
            self.logger.warning("Discarding partial recording failed: %s", exc)
