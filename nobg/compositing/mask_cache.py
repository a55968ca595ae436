from __future__ import annotations

from typing import Optional

import numpy as np


class MaskCache:
    """Holds the most recent successfully derived mask for one run."""

    def __init__(self) -> None:
        self._mask: Optional[np.ndarray] = None
        self.updates = 0

    def store(self, mask: np.ndarray) -> None:
        self._mask = mask
        self.updates += 1

    def load(self) -> Optional[np.ndarray]:
        return self._mask

    @property
    def empty(self) -> bool:
        return self._mask is None

    def clear(self) -> None:
        self._mask = None
        self.updates = 0
