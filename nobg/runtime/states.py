from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from nobg.utils.errors import ErrorKind
from nobg.utils.types import Artifact, RunMetrics


class RunState(str, Enum):
    IDLE = "IDLE"
    INITIALIZING = "INITIALIZING"
    READY = "READY"
    RUNNING = "RUNNING"
    FINALIZING = "FINALIZING"
    COMPLETED = "COMPLETED"
    ERRORED = "ERRORED"


TRANSITIONS = {
    RunState.IDLE: {RunState.INITIALIZING},
    RunState.INITIALIZING: {RunState.READY, RunState.ERRORED},
    RunState.READY: {RunState.RUNNING},
    RunState.RUNNING: {RunState.FINALIZING, RunState.ERRORED},
    RunState.FINALIZING: {RunState.COMPLETED, RunState.ERRORED},
    RunState.COMPLETED: set(),
    RunState.ERRORED: set(),
}

TERMINAL_STATES = {RunState.COMPLETED, RunState.ERRORED}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class RunEvent:
    """Published to subscribers on every state change ("state") and emitted frame ("progress")."""

    type: str
    state: RunState
    previous: Optional[RunState] = None
    frame_index: int = 0
    frames_emitted: int = 0
    frame_count: int = 0
    message: str = ""
    error_kind: Optional[ErrorKind] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "state": self.state.value,
            "previous": self.previous.value if self.previous else None,
            "frame_index": self.frame_index,
            "frames_emitted": self.frames_emitted,
            "frame_count": self.frame_count,
            "message": self.message,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "timestamp": round(self.timestamp, 3),
        }


@dataclass
class PipelineRun:
    """Aggregate state of one end-to-end processing invocation."""

    width: int = 0
    height: int = 0
    fps: float = 0.0
    source_fps: float = 0.0
    frame_count: int = 0
    state: RunState = RunState.IDLE
    aborted: bool = False
    artifact: Optional[Artifact] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    metrics: RunMetrics = field(default_factory=RunMetrics)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.COMPLETED

    def transition(self, new_state: RunState) -> RunState:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        previous = self.state
        self.state = new_state
        if new_state in TERMINAL_STATES:
            self.finished_at = time.time()
        return previous

    def summary(self) -> Dict[str, Any]:
        m = self.metrics
        return {
            "state": self.state.value,
            "size": [self.width, self.height],
            "fps": self.fps,
            "source_fps": self.source_fps,
            "source_frames": self.frame_count,
            "aborted": self.aborted,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
            "artifact_bytes": len(self.artifact) if self.artifact else 0,
            "duration_s": round(self.artifact.duration_s, 3) if self.artifact else 0.0,
            "elapsed_s": round((self.finished_at or time.time()) - self.started_at, 3),
            "frames": {
                "polled": m.frames_polled,
                "segmented": m.frames_segmented,
                "emitted": m.frames_emitted,
                "skipped": m.frames_skipped,
                "cache_reuses": m.cache_reuses,
            },
            "segmentation": {
                "failures": m.segmentation_failures,
                "timeouts": m.segmentation_timeouts,
                "slow": m.slow_segmentations,
                "mean_ms": round(m.mean_segmentation_ms, 2),
            },
            "processing_fps": round(m.processing_fps, 2),
            "warnings": list(m.warnings),
        }
