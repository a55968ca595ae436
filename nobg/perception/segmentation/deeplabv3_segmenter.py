import time
from typing import Optional

import numpy as np
import torch
import torchvision

from nobg.perception.segmentation.base_segmenter import BaseSegmenter
from nobg.utils.errors import ModelLoadFailure, SegmentationFailure
from nobg.utils.logger import get_logger
from nobg.utils.types import Region, SegmentationResult

# Pascal VOC class index used by torchvision segmentation weights.
PERSON_CLASS = 15

_IMAGENET_MEAN = (0.485, 0.456, 0.406)
_IMAGENET_STD = (0.229, 0.224, 0.225)


class DeepLabV3Segmenter(BaseSegmenter):
    """
    DeepLabV3 (MobileNetV3-Large backbone) person segmentation.
    Reports the softmax probability of the person class as the region confidence.
    """

    def __init__(
        self,
        device: Optional[str] = None,
        person_class: int = PERSON_CLASS,
        min_confidence: float = 0.05,
    ):
        self.device = device or ("cuda" if torch.cuda.is_available() else "cpu")
        self.person_class = int(person_class)
        self.min_confidence = float(min_confidence)
        self.model = None
        self.last_latency_ms = 0.0
        self.logger = get_logger(__name__)

    def load(self) -> None:
        if self.model is not None:
            return
        try:
            model = torchvision.models.segmentation.deeplabv3_mobilenet_v3_large(weights="DEFAULT")
            model.to(self.device)
            model.eval()
        except Exception as exc:
            raise ModelLoadFailure(f"Could not load DeepLabV3 on {self.device}: {exc}") from exc
        self.model = model
        self.loaded = True
        self.logger.info("DeepLabV3 loaded on %s", self.device)

    @torch.no_grad()
    def infer(self, frame: np.ndarray) -> SegmentationResult:
        """
        Args:
            frame: RGBA image (H, W, 4), uint8

        Returns:
            [Region] with the person probability map, or [] when no pixel looks like a person.
        """
        if self.model is None:
            self.load()
        start = time.perf_counter()
        rgb = np.ascontiguousarray(frame[..., :3])
        img = torch.from_numpy(rgb).permute(2, 0, 1).float() / 255.0
        mean = torch.tensor(_IMAGENET_MEAN).view(3, 1, 1)
        std = torch.tensor(_IMAGENET_STD).view(3, 1, 1)
        img = ((img - mean) / std).unsqueeze(0).to(self.device)

        try:
            output = self.model(img)["out"]
        except RuntimeError as exc:
            raise SegmentationFailure(f"DeepLabV3 inference failed: {exc}") from exc
        probs = torch.softmax(output, dim=1)
        person = probs[0, self.person_class].cpu().numpy().astype(np.float32)

        self.last_latency_ms = (time.perf_counter() - start) * 1000.0
        peak = float(person.max()) if person.size else 0.0
        if peak < self.min_confidence:
            return []
        return [Region(confidence=person, label="person", score=peak)]
