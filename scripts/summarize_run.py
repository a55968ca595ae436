#!/usr/bin/env python3
import json
import sys
from pathlib import Path


def pct(n, d):
    return (100.0 * n / d) if d else 0.0


def main():
    if len(sys.argv) < 2:
        print("Usage: python scripts/summarize_run.py results/run_YYYYMMDD_HHMMSS")
        sys.exit(1)

    run_dir = Path(sys.argv[1])
    metrics_path = run_dir / "metrics.json"
    if not metrics_path.exists():
        raise FileNotFoundError(f"Missing: {metrics_path}")

    m = json.loads(metrics_path.read_text())
    run = m.get("run", {})
    frames = run.get("frames", {})
    seg = run.get("segmentation", {})
    polled = frames.get("polled", 0)

    print("\n================ NOBG RUN SUMMARY ================")
    print(f"Run dir: {run_dir}")
    print(f"Input:   {m.get('input', {}).get('path')}")
    print(f"State:   {run.get('state')}" + (" (aborted)" if run.get("aborted") else ""))
    if run.get("error_kind"):
        print(f"Error:   {run['error_kind']}: {run.get('error_message')}")
    print(f"Output:  {run.get('size')} @ {run.get('fps')} fps, {run.get('duration_s')}s, {run.get('artifact_bytes')} bytes")

    print("\nFrames:")
    print(f"  source:        {run.get('source_frames')}")
    print(f"  polled:        {polled}")
    print(f"  emitted:       {frames.get('emitted', 0)} ({pct(frames.get('emitted', 0), polled):.1f}%)")
    print(f"  skipped:       {frames.get('skipped', 0)}")
    print(f"  mask reuses:   {frames.get('cache_reuses', 0)} ({pct(frames.get('cache_reuses', 0), polled):.1f}%)")

    print("\nSegmentation:")
    print(f"  mean latency:  {seg.get('mean_ms', 0.0):.2f} ms")
    print(f"  failures:      {seg.get('failures', 0)}")
    print(f"  timeouts:      {seg.get('timeouts', 0)}")
    print(f"  over budget:   {seg.get('slow', 0)}")
    print(f"\nProcessing FPS: {run.get('processing_fps', 0.0):.2f}")

    for w in run.get("warnings", []):
        print(f"WARNING: {w}")
    print("===================================================\n")


if __name__ == "__main__":
    main()
