# app/infrastructure/cv/surface_pool.py
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterator, List, Tuple

import numpy as np

from app.config.settings import settings

Shape = Tuple[int, int, int]


class SurfacePool:
    """Free-list of reusable RGB drawing surfaces, keyed by shape.

    A surface belongs to exactly one caller between ``acquire`` and the end of
    the ``with`` block. The lock only guards the list operations, so several
    surfaces can be drawn on at the same time.
    """

    def __init__(self, max_idle_per_shape: int = 4):
        self.max_idle_per_shape = max_idle_per_shape
        self._free: Dict[Shape, List[np.ndarray]] = defaultdict(list)
        self._lock = threading.Lock()
        self._leased: set = set()

    def _take(self, shape: Shape) -> np.ndarray:
        with self._lock:
            free = self._free[shape]
            surface = free.pop() if free else None
        if surface is None:
            surface = np.empty(shape, dtype=np.uint8)
        with self._lock:
            self._leased.add(id(surface))
        return surface

    def _give_back(self, surface: np.ndarray) -> None:
        with self._lock:
            self._leased.discard(id(surface))
            free = self._free[surface.shape]
            if len(free) < self.max_idle_per_shape:
                free.append(surface)

    @contextmanager
    def acquire(self, width: int, height: int) -> Iterator[np.ndarray]:
        surface = self._take((height, width, 3))
        try:
            yield surface
        finally:
            self._give_back(surface)

    def idle_count(self, width: int, height: int) -> int:
        with self._lock:
            return len(self._free[(height, width, 3)])

    @property
    def leased_count(self) -> int:
        with self._lock:
            return len(self._leased)


surface_pool = SurfacePool(max_idle_per_shape=settings.SURFACE_POOL_SIZE)
