# app/infrastructure/cv/markers.py
from functools import lru_cache
from typing import Optional, Sequence

from PIL import ImageDraw, ImageFont

from app.domain.errors import ImageProcessingError
from app.domain.geometry import letterbox_geometry, marker_radius
from app.domain.models import Dimensions, Marker, PaddedSquareImage
from app.infrastructure.cv.image_process import decode_rgb, encode_image

OUTLINE_RATIO = 0.2
LABEL_COLOR = "white"
OUTLINE_COLOR = "white"

_FONT_CANDIDATES = (
    "DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "/System/Library/Fonts/Supplemental/Arial Bold.ttf",
    "/Library/Fonts/Arial Bold.ttf",
    "arialbd.ttf",
)


@lru_cache(maxsize=16)
def _label_font(size: int) -> ImageFont.ImageFont:
    # Try a few common bold fonts; fallback to default
    for name in _FONT_CANDIDATES:
        try:
            return ImageFont.truetype(name, size=size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


def _draw_label(draw: ImageDraw.ImageDraw, label: str, x: float, y: float, font) -> None:
    left, top, right, bottom = draw.textbbox((0, 0), label, font=font)
    text_x = x - (left + right) / 2
    text_y = y - (top + bottom) / 2
    draw.text((text_x, text_y), label, fill=LABEL_COLOR, font=font)


def annotate_markers(
    padded: PaddedSquareImage,
    markers: Sequence[Marker],
    original: Dimensions,
    quality: Optional[int] = None,
) -> PaddedSquareImage:
    target = padded.target_dimension
    # Geometry comes from the original size, never from the padded square itself
    box = letterbox_geometry(original, target)

    canvas = decode_rgb(padded.buffer, stage="annotate")
    if canvas.size != (target, target):
        canvas.close()
        raise ImageProcessingError(
            f"Padded image is {canvas.width}x{canvas.height}, expected {target}x{target}",
            stage="annotate",
        )

    radius = marker_radius(target, target)
    outline = max(1, int(round(radius * OUTLINE_RATIO)))
    font = _label_font(max(1, int(round(radius))))

    try:
        draw = ImageDraw.Draw(canvas)
        for marker in markers:
            x, y = box.locate(marker.position)
            draw.ellipse(
                (x - radius, y - radius, x + radius, y + radius),
                fill=marker.color,
                outline=OUTLINE_COLOR,
                width=outline,
            )
            _draw_label(draw, marker.label, x, y, font)
        encoded = encode_image(canvas, quality=quality, stage="annotate")
    except (OSError, ValueError) as exc:
        raise ImageProcessingError(f"Drawing markers failed: {exc}", stage="annotate") from exc
    finally:
        canvas.close()

    return PaddedSquareImage(buffer=encoded, target_dimension=target, source_dimensions=original)
