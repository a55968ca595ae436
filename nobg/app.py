from __future__ import annotations

import argparse
import json
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from rich.console import Console
from tqdm import tqdm

from nobg.inputs.video_input import VideoInput
from nobg.recording.factory import build_recorder
from nobg.recording.surface import RenderSurface
from nobg.runtime.event_logger import RunEventLogger
from nobg.runtime.orchestrator import Orchestrator
from nobg.runtime.states import RunEvent
from nobg.utils.config import PipelineConfig, get, load_yaml
from nobg.utils.errors import PipelineError
from nobg.utils.logger import setup_logger
from nobg.utils.types import artifact_filename

DEFAULT_CONFIG = Path("configs/default.yaml")


def make_run_dir(base_dir: str | Path) -> Path:
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir = Path(base_dir) / f"run_{ts}"
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def build_segmenter(cfg: Dict[str, Any]):
    model = str(get(cfg, "segmentation.model", "deeplabv3"))
    if model != "deeplabv3":
        raise ValueError(f"Unknown segmentation model: {model}")
    # torch is heavy; only import it once a model is actually requested.
    from nobg.perception.segmentation.deeplabv3_segmenter import PERSON_CLASS, DeepLabV3Segmenter

    return DeepLabV3Segmenter(
        device=get(cfg, "segmentation.device", None),
        person_class=int(get(cfg, "segmentation.person_class", PERSON_CLASS)),
        min_confidence=float(get(cfg, "segmentation.min_confidence", 0.05)),
    )


def apply_overrides(cfg: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    if args.threshold is not None:
        cfg.setdefault("pipeline", {})["threshold"] = args.threshold
    if args.fps is not None:
        cfg.setdefault("recorder", {})["fps"] = args.fps
    if args.backend is not None:
        cfg.setdefault("recorder", {})["backend"] = args.backend
    if args.capture is not None:
        cfg.setdefault("recorder", {})["capture"] = args.capture
    if args.output_dir is not None:
        cfg.setdefault("runtime", {})["output_dir"] = args.output_dir
    if args.offline:
        cfg.setdefault("input", {})["realtime"] = False
    return cfg


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="nobg - remove the background from a video clip")
    parser.add_argument("--input", required=True, help="Path to input video")
    parser.add_argument("--config", default=None, help=f"Path to YAML config (default: {DEFAULT_CONFIG} if present)")
    parser.add_argument("--output-dir", default=None, help="Base directory for run folders")
    parser.add_argument("--offline", action="store_true", help="Process every frame instead of following playback speed")
    parser.add_argument("--threshold", type=float, default=None, help="Foreground confidence cutoff (default 0.6)")
    parser.add_argument("--fps", type=float, default=None, help="Output frame rate (default 30)")
    parser.add_argument("--backend", choices=["auto", "ffmpeg", "pyav", "png"], default=None, help="Recorder backend")
    parser.add_argument("--capture", choices=["push", "surface"], default=None, help="How frames reach the recorder")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    if args.config is not None:
        cfg: Dict[str, Any] = load_yaml(args.config)
    elif DEFAULT_CONFIG.exists():
        cfg = load_yaml(DEFAULT_CONFIG)
    else:
        cfg = {}
    cfg = apply_overrides(cfg, args)
    pipeline_cfg = PipelineConfig.from_dict(cfg)

    run_dir = make_run_dir(get(cfg, "runtime.output_dir", "results"))
    logger = setup_logger(log_dir=run_dir, level=get(cfg, "runtime.log_level", "INFO"))
    console = Console()
    console.print(f"[bold]nobg[/bold] run dir: {run_dir}")

    input_path = Path(args.input)
    if input_path.exists():
        size_mb = input_path.stat().st_size / (1024 * 1024)
        logger.info("Input video: %s (%.1f MB)", input_path, size_mb)
        if size_mb > pipeline_cfg.max_input_mb:
            console.print(
                f"[yellow]Input is {size_mb:.0f} MB (soft cap {pipeline_cfg.max_input_mb:.0f} MB); "
                "processing may take a long time. Try a shorter clip.[/yellow]"
            )

    try:
        vin = VideoInput(
            input_path,
            frame_rate=get(cfg, "input.frame_rate", None),
            realtime=bool(get(cfg, "input.realtime", True)),
        )
    except PipelineError as exc:
        console.print(f"[red]{exc}[/red]")
        return 2

    try:
        recorder = build_recorder(cfg)
    except PipelineError as exc:
        console.print(f"[red]{exc}[/red]")
        return 2
    segmenter = build_segmenter(cfg)
    surface = RenderSurface() if get(cfg, "recorder.capture", "push") == "surface" else None
    orchestrator = Orchestrator(segmenter, recorder, pipeline_cfg, surface=surface, logger=logger)
    orchestrator.subscribe(RunEventLogger(run_dir))

    bar = tqdm(total=vin.frame_count or None, unit="frame", desc="Removing background")

    def on_event(event: RunEvent) -> None:
        if event.type == "progress":
            bar.update(max(0, event.frame_index + 1 - bar.n))
        elif event.type == "state":
            bar.set_postfix_str(event.state.value)

    orchestrator.subscribe(on_event)

    # Ctrl-C stops the run cleanly; frames recorded so far are still written out.
    previous_handler = signal.signal(signal.SIGINT, lambda *_: orchestrator.abort())
    try:
        run = orchestrator.process(vin)
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        bar.close()

    if run.artifact is not None:
        out_path = run_dir / artifact_filename(input_path.name, run.artifact.container)
        out_path.write_bytes(run.artifact.data)
        logger.info("Saved video: %s", out_path)
        console.print(
            f"[green]Done[/green] {out_path} | {run.artifact.frame_count} frames | "
            f"{run.artifact.duration_s:.2f}s" + (" | partial (aborted)" if run.aborted else "")
        )
    else:
        console.print(f"[red]Failed[/red] {run.error_kind.value if run.error_kind else 'unknown'}: {run.error_message}")

    if bool(get(cfg, "runtime.save_metrics", True)):
        metrics = {
            "input": {
                "path": str(input_path),
                "meta": vin.meta.__dict__ if vin.meta else {},
            },
            "config": {
                "threshold": pipeline_cfg.threshold,
                "fps": pipeline_cfg.fps,
                "realtime": vin.realtime,
                "recorder": type(recorder).__name__,
                "capture": "surface" if surface is not None else "push",
            },
            "run": run.summary(),
        }
        metrics_path = run_dir / "metrics.json"
        metrics_path.write_text(json.dumps(metrics, indent=2), encoding="utf-8")
        logger.info("Saved metrics: %s", metrics_path)

    logger.info("Done.")
    return 0 if run.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
