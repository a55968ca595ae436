from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_THRESHOLD = 0.6
DEFAULT_FPS = 30.0
DEFAULT_MAX_INPUT_MB = 500.0


def load_yaml(path: str | Path) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path.resolve()}")
    with config_path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def get(cfg: Dict[str, Any], key: str, default: Any = None) -> Any:
    """
    Dot-access helper:
      get(cfg, "pipeline.threshold", 0.6)
    """
    cur: Any = cfg
    for part in key.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


@dataclass
class PipelineConfig:
    """Per-run knobs of the segmentation/compositing/recording loop."""

    threshold: float = DEFAULT_THRESHOLD
    fps: float = DEFAULT_FPS
    segmentation_timeout_s: Optional[float] = None
    poll_interval_s: float = 0.002
    max_input_mb: float = DEFAULT_MAX_INPUT_MB
    latency_budget_ms: float = 0.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {self.threshold}")
        if self.fps <= 0:
            raise ValueError(f"fps must be positive, got {self.fps}")
        if self.segmentation_timeout_s is not None and self.segmentation_timeout_s <= 0:
            raise ValueError("segmentation_timeout_s must be positive when set")

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "PipelineConfig":
        timeout = get(cfg, "pipeline.segmentation_timeout_s", None)
        return cls(
            threshold=float(get(cfg, "pipeline.threshold", DEFAULT_THRESHOLD)),
            fps=float(get(cfg, "recorder.fps", DEFAULT_FPS)),
            segmentation_timeout_s=float(timeout) if timeout is not None else None,
            poll_interval_s=float(get(cfg, "pipeline.poll_interval_s", 0.002)),
            max_input_mb=float(get(cfg, "input.max_input_mb", DEFAULT_MAX_INPUT_MB)),
            latency_budget_ms=float(get(cfg, "pipeline.latency_budget_ms", 0.0)),
        )
