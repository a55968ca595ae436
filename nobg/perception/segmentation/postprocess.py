from typing import Sequence

import cv2
import numpy as np

from nobg.utils.types import Region

ALPHA_OPAQUE = 255
ALPHA_TRANSPARENT = 0


def merge_confidence(regions: Sequence[Region], height: int, width: int) -> np.ndarray:
    """
    Union of region confidence maps at frame resolution.

    Args:
        regions: detected subjects; coarser maps (per-superpixel) are resized
        height, width: frame size

    Returns:
        confidence: (H, W) float32 in [0, 1], per-pixel max over regions
    """
    merged = np.zeros((height, width), dtype=np.float32)
    for region in regions:
        conf = np.asarray(region.confidence, dtype=np.float32)
        if conf.ndim == 3:
            conf = conf[..., 0]
        if conf.shape != (height, width):
            conf = cv2.resize(np.ascontiguousarray(conf), (width, height), interpolation=cv2.INTER_LINEAR)
        np.maximum(merged, conf, out=merged)
    return np.clip(merged, 0.0, 1.0)


def threshold_mask(confidence: np.ndarray, threshold: float) -> np.ndarray:
    """Binary foreground mask: True where confidence >= threshold."""
    return confidence >= threshold


def apply_alpha(frame: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """
    Copy of an RGBA frame with alpha 255 on foreground and 0 on background.
    RGB channels are left untouched (hard cutover, no feathering).
    """
    if mask.shape != frame.shape[:2]:
        raise ValueError(f"mask {mask.shape} does not match frame {frame.shape[:2]}")
    out = frame.copy()
    out[..., 3] = np.where(mask, ALPHA_OPAQUE, ALPHA_TRANSPARENT).astype(np.uint8)
    return out
