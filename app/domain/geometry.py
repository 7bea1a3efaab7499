# app/domain/geometry.py
"""Letterbox geometry shared by the resizer, the marker annotator and the cropper.

Every stage that needs to know where the real content sits inside a padded
square must go through :func:`letterbox_geometry`. Padding and cropping only
agree when both use the identical floating-point formula.
"""
from dataclasses import dataclass
from typing import Tuple

from app.domain.errors import ImageProcessingError
from app.domain.models import Dimensions, NormalizedPosition

MIN_MARKER_RADIUS = 8
MARKER_RADIUS_RATIO = 0.02


@dataclass(frozen=True)
class ContentBox:
    target_dimension: int
    content_width: float
    content_height: float
    offset_x: float
    offset_y: float

    def pixel_box(self) -> Tuple[int, int, int, int]:
        """Integer (left, top, width, height) of the content rectangle."""
        t = self.target_dimension
        width = min(t, max(1, int(round(self.content_width))))
        height = min(t, max(1, int(round(self.content_height))))
        left = min(t - width, max(0, int(round(self.offset_x))))
        top = min(t - height, max(0, int(round(self.offset_y))))
        return left, top, width, height

    def locate(self, position: NormalizedPosition) -> Tuple[float, float]:
        x = self.offset_x + (position.x_percent / 100) * self.content_width
        y = self.offset_y + (position.y_percent / 100) * self.content_height
        return x, y

    @property
    def has_padding(self) -> bool:
        return self.offset_x > 0 or self.offset_y > 0


def letterbox_geometry(original: Dimensions, target_dimension: int) -> ContentBox:
    if target_dimension <= 0:
        raise ImageProcessingError(
            f"Target dimension must be positive, got {target_dimension}", stage="geometry"
        )

    aspect = original.width / original.height
    if aspect > 1:
        # Landscape
        content_w = target_dimension
        content_h = target_dimension / aspect
    else:
        # Portrait or square
        content_h = target_dimension
        content_w = target_dimension * aspect

    offset_x = (target_dimension - content_w) / 2
    offset_y = (target_dimension - content_h) / 2
    return ContentBox(
        target_dimension=target_dimension,
        content_width=float(content_w),
        content_height=float(content_h),
        offset_x=float(offset_x),
        offset_y=float(offset_y),
    )


def marker_radius(width: int, height: int) -> float:
    return max(MIN_MARKER_RADIUS, min(width, height) * MARKER_RADIUS_RATIO)
