# app/infrastructure/cv/image_process.py
import io
import os
from contextlib import contextmanager
from typing import Iterator, Optional, Union, BinaryIO

import cv2
import numpy as np
from PIL import ExifTags, Image, ImageOps, UnidentifiedImageError

from app.config.settings import settings
from app.domain.errors import DecodeError, ImageProcessingError
from app.domain.geometry import letterbox_geometry
from app.domain.models import Dimensions, ImageBuffer, PaddedSquareImage
from app.infrastructure.cv.surface_pool import SurfacePool, surface_pool

ImageSource = Union[bytes, bytearray, memoryview, ImageBuffer, BinaryIO, str, os.PathLike]

_DECODE_ERRORS = (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError)
# Orientation values that need a flip or rotation before use
_TRANSPOSED_ORIENTATIONS = frozenset(range(2, 9))


def _as_stream(source: ImageSource):
    if isinstance(source, ImageBuffer):
        return io.BytesIO(source.data)
    if isinstance(source, (bytes, bytearray, memoryview)):
        return io.BytesIO(bytes(source))
    if isinstance(source, (str, os.PathLike)):
        return os.fspath(source)
    if hasattr(source, "read"):
        if hasattr(source, "seek"):
            source.seek(0)
        return source
    raise DecodeError(f"Unsupported image source type: {type(source).__name__}")


@contextmanager
def open_image(source: ImageSource, stage: str = "decode") -> Iterator[Image.Image]:
    # Image.open hanya membaca header; piksel dimuat saat dibutuhkan.
    try:
        img = Image.open(_as_stream(source))
    except _DECODE_ERRORS as exc:
        raise DecodeError(f"Source is not a valid image ({type(exc).__name__})", details={"during": stage}) from exc
    with img:
        # Ukuran dan piksel mengikuti orientasi tampilan (EXIF Orientation)
        try:
            orientation = img.getexif().get(ExifTags.Base.Orientation, 1)
            oriented = ImageOps.exif_transpose(img) if orientation in _TRANSPOSED_ORIENTATIONS else None
        except _DECODE_ERRORS as exc:
            raise DecodeError(f"Failed to apply EXIF orientation ({type(exc).__name__})", details={"during": stage}) from exc
        if oriented is None:
            yield img
        else:
            with oriented:
                yield oriented


def probe_dimensions(source: ImageSource) -> Dimensions:
    with open_image(source, stage="probe") as img:
        width, height = img.size
    if width <= 0 or height <= 0:
        raise DecodeError(f"Image reports invalid size {width}x{height}", details={"during": "probe"})
    return Dimensions(width=width, height=height)


def decode_rgb(source: ImageSource, stage: str = "decode") -> Image.Image:
    with open_image(source, stage=stage) as img:
        try:
            has_alpha = img.mode in ("RGBA", "LA", "PA") or "transparency" in img.info
            if has_alpha:
                # Transparent areas end up black, same as the letterbox padding
                rgba = img.convert("RGBA")
                background = Image.new("RGBA", rgba.size, (0, 0, 0, 255))
                rgb = Image.alpha_composite(background, rgba).convert("RGB")
            else:
                rgb = img.convert("RGB")
        except _DECODE_ERRORS as exc:
            raise DecodeError(f"Failed to decode image pixels ({type(exc).__name__})", details={"during": stage}) from exc
    return rgb


def encode_image(img: Image.Image, fmt: str = "jpg", quality: Optional[int] = None, stage: str = "encode") -> ImageBuffer:
    fmt = (fmt or "jpg").lower()
    quality = quality or settings.JPEG_QUALITY
    if fmt in ("jpg", "jpeg"):
        # JPEG can't have alpha
        if img.mode != "RGB":
            img = img.convert("RGB")
        save_kwargs = dict(format="JPEG", quality=quality, optimize=True)
        mime_type = "image/jpeg"
    elif fmt == "png":
        save_kwargs = dict(format="PNG", optimize=True)
        mime_type = "image/png"
    else:
        raise ImageProcessingError(f"Unsupported output format: {fmt}", stage=stage)

    buf = io.BytesIO()
    try:
        img.save(buf, **save_kwargs)
    except (OSError, ValueError) as exc:
        raise ImageProcessingError(f"Encoding to {fmt} failed: {exc}", stage=stage) from exc
    return ImageBuffer(data=buf.getvalue(), mime_type=mime_type)


def _scale_pixels(rgb: Image.Image, width: int, height: int) -> np.ndarray:
    src = np.asarray(rgb)
    if (rgb.width, rgb.height) == (width, height):
        return src
    shrinking = width < rgb.width or height < rgb.height
    interpolation = cv2.INTER_AREA if shrinking else cv2.INTER_CUBIC
    return cv2.resize(src, (width, height), interpolation=interpolation)


def letterbox_resize(
    source: ImageSource,
    target_dimension: int,
    quality: Optional[int] = None,
    pool: Optional[SurfacePool] = None,
) -> PaddedSquareImage:
    rgb = decode_rgb(source, stage="resize")
    original = Dimensions(width=rgb.width, height=rgb.height)
    box = letterbox_geometry(original, target_dimension)
    left, top, width, height = box.pixel_box()

    try:
        content = _scale_pixels(rgb, width, height)
    except cv2.error as exc:
        raise ImageProcessingError(f"Scaling to {width}x{height} failed: {exc}", stage="resize") from exc
    finally:
        rgb.close()

    pool = pool or surface_pool
    try:
        with pool.acquire(target_dimension, target_dimension) as surface:
            surface.fill(0)
            surface[top:top + height, left:left + width] = content
            # Encode while the surface is still owned by this call
            encoded = encode_image(Image.fromarray(surface), quality=quality, stage="resize")
    except MemoryError as exc:
        raise ImageProcessingError(f"Could not allocate a {target_dimension}px surface", stage="resize") from exc

    return PaddedSquareImage(buffer=encoded, target_dimension=target_dimension, source_dimensions=original)


def crop_to_aspect_ratio(
    square: ImageSource,
    original: Dimensions,
    target_dimension: int,
    quality: Optional[int] = None,
) -> ImageBuffer:
    box = letterbox_geometry(original, target_dimension)
    img = decode_rgb(square, stage="crop")
    try:
        if img.size != (target_dimension, target_dimension):
            raise ImageProcessingError(
                f"Expected a {target_dimension}x{target_dimension} image, got {img.width}x{img.height}",
                stage="crop",
                details={"actual": [img.width, img.height], "expected": target_dimension},
            )
        left, top, width, height = box.pixel_box()
        cropped = img.crop((left, top, left + width, top + height))
        return encode_image(cropped, quality=quality, stage="crop")
    finally:
        img.close()
