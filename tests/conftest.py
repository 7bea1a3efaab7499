from __future__ import annotations

import io
from typing import List, Optional, Tuple

import numpy as np
import pytest
from PIL import Image

from app.domain.models import ImageBuffer, ModelResponse, ModelSubmission
from app.infrastructure.cv.surface_pool import SurfacePool


def make_image(width: int, height: int, color=(200, 30, 30), fmt: str = "PNG") -> bytes:
    img = Image.new("RGB", (width, height), color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def decode(data) -> np.ndarray:
    if isinstance(data, ImageBuffer):
        data = data.data
    with Image.open(io.BytesIO(data)) as img:
        return np.asarray(img.convert("RGB"))


def is_close(pixel, color, tol: int = 40) -> bool:
    return all(abs(int(p) - int(c)) <= tol for p, c in zip(pixel, color))


class FakeModel:
    """In-memory stand-in for the generative model boundary."""

    def __init__(
        self,
        result_size: Tuple[int, int] = (1024, 1024),
        return_image: bool = True,
        describe_error: Optional[Exception] = None,
        generate_error: Optional[Exception] = None,
        descriptions: Optional[str] = None,
    ):
        self.result_size = result_size
        self.return_image = return_image
        self.describe_error = describe_error
        self.generate_error = generate_error
        self.descriptions = descriptions
        self.describe_calls: List[int] = []
        self.submissions: List[ModelSubmission] = []

    async def describe_locations(self, marked_scene: ImageBuffer, marker_count: int) -> str:
        self.describe_calls.append(marker_count)
        if self.describe_error is not None:
            raise self.describe_error
        if self.descriptions is not None:
            return self.descriptions
        return "\n".join(f"**Marker {i + 1}:** on the wooden table." for i in range(marker_count))

    async def generate(self, submission: ModelSubmission) -> ModelResponse:
        self.submissions.append(submission)
        if self.generate_error is not None:
            raise self.generate_error
        if not self.return_image:
            return ModelResponse(image=None, raw="cand0: reason=SAFETY, parts=text('no')")
        data = make_image(*self.result_size, color=(20, 160, 20))
        return ModelResponse(image=ImageBuffer(data=data, mime_type="image/png"), raw="cand0: reason=STOP, parts=inline_data")


@pytest.fixture
def pool() -> SurfacePool:
    return SurfacePool(max_idle_per_shape=2)


@pytest.fixture
def landscape_scene() -> bytes:
    return make_image(1600, 900, color=(128, 128, 128))
