from pydantic import BaseModel, Field
from typing import List, Optional

from app.domain.models import NormalizedPosition


class PlacedProduct(BaseModel):
    image: str                             # URL, path, data URL or raw base64
    label: str = Field(min_length=1, max_length=200)   # used as the product description
    position: NormalizedPosition


class CompositeBody(BaseModel):
    id: Optional[str] = None
    scene: str                             # URL, path, data URL or raw base64
    products: List[PlacedProduct] = Field(default_factory=list)
    prompt: Optional[str] = Field(default=None, max_length=2000)   # extra freeform instructions


class CompositeResponse(BaseModel):
    run_id: str
    final_image: str                       # data URL, original aspect ratio
    width: int
    height: int
    debug_image: str                       # marked scene as data URL
    final_prompt: str
    raw_response: Optional[str] = None     # only when DEBUG
    url: Optional[str] = None              # Cloudinary URL when PUBLISH_RESULTS
