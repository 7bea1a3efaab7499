# app/domain/models.py
import base64
import binascii
from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

from app.domain.errors import DecodeError

# Warna marker, dipakai bergiliran berdasarkan indeks produk (wrap-around).
MARKER_PALETTE = (
    "#ef4444",
    "#3b82f6",
    "#10b981",
    "#f59e0b",
    "#8b5cf6",
    "#ec4899",
)


def palette_color(index: int) -> str:
    return MARKER_PALETTE[index % len(MARKER_PALETTE)]


class Dimensions(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: PositiveInt
    height: PositiveInt

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height


class NormalizedPosition(BaseModel):
    """Position in percent of the original, unpadded content area."""
    model_config = ConfigDict(frozen=True)

    x_percent: float = Field(ge=0, le=100)
    y_percent: float = Field(ge=0, le=100)


class Marker(BaseModel):
    model_config = ConfigDict(frozen=True)

    position: NormalizedPosition
    color: str
    label: str = Field(min_length=1, max_length=4)

    @field_validator("color")
    @classmethod
    def _color_in_palette(cls, value: str) -> str:
        value = value.lower()
        if value not in MARKER_PALETTE:
            raise ValueError(f"color {value!r} is not part of the marker palette")
        return value


@dataclass(frozen=True)
class ImageBuffer:
    data: bytes
    mime_type: str = "image/jpeg"

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"

    @classmethod
    def from_data_url(cls, url: str) -> "ImageBuffer":
        if not url.startswith("data:") or "," not in url:
            raise DecodeError("Not a data URL", details={"prefix": url[:30]})
        header, encoded = url.split(",", 1)
        mime_type = header[5:].split(";", 1)[0] or "application/octet-stream"
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError("Data URL payload is not valid base64") from exc
        return cls(data=data, mime_type=mime_type)


@dataclass(frozen=True)
class PaddedSquareImage:
    buffer: ImageBuffer
    target_dimension: int
    source_dimensions: Dimensions


@dataclass(frozen=True)
class ProductPlacement:
    """One product the caller wants placed on the scene."""
    image: object  # any image source accepted by the cv layer
    label: str
    position: NormalizedPosition


@dataclass(frozen=True)
class PreparedProduct:
    image: PaddedSquareImage
    position: NormalizedPosition
    description: str


@dataclass(frozen=True)
class CompositeRequest:
    scene: PaddedSquareImage
    products: List[PreparedProduct]
    scene_dimensions: Dimensions


@dataclass(frozen=True)
class ModelSubmission:
    ordered_product_images: List[ImageBuffer]
    product_descriptions: List[str]
    clean_scene_image: ImageBuffer
    marked_scene_image: ImageBuffer
    freeform_prompt: str


@dataclass(frozen=True)
class ModelResponse:
    image: Optional[ImageBuffer]
    raw: str = ""


@dataclass
class CompositeResult:
    image: ImageBuffer
    dimensions: Dimensions
    marked_scene: ImageBuffer
    prompt: str
    raw_response: str = ""
    run_id: str = ""
    timings: dict = field(default_factory=dict)
