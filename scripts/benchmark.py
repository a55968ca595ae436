import time

import numpy as np

from nobg.compositing.mask_compositor import MaskCompositor
from nobg.utils.types import Region


def bench(width, height, iterations=50):
    rng = np.random.default_rng(0)
    frame = rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)
    # Model-resolution map, resized to the frame inside the compositor.
    conf = rng.random((height // 4, width // 4)).astype(np.float32)
    compositor = MaskCompositor()
    timings = []
    for i in range(iterations):
        regions = [Region(confidence=conf)] if i % 3 else []
        t0 = time.perf_counter()
        compositor.process(frame, regions)
        timings.append((time.perf_counter() - t0) * 1000.0)
    timings.sort()
    return {
        "size": f"{width}x{height}",
        "ms_p50": round(timings[len(timings) // 2], 2),
        "ms_p95": round(timings[int(len(timings) * 0.95) - 1], 2),
    }


def main():
    start = time.time()
    for w, h in ((640, 360), (1280, 720), (1920, 1080)):
        print("Compositing", bench(w, h))
    print("Elapsed", round(time.time() - start, 2))


if __name__ == "__main__":
    main()
