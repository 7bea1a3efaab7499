# app/domain/prompts.py
from typing import Optional, Sequence

LOCATION_PROMPT = """
You are an expert scene analyst. I will provide you with an image that has multiple colored markers on it (numbered 1, 2, 3, etc.).
Your task is to provide dense, semantic descriptions for EACH marker location.

For each numbered marker, describe:
1. What surface/object it's on
2. Spatial relationships to nearby objects
3. Rough relative position in the image

The image may contain black padding bars; ignore them.

Format your response as:
**Marker 1:** [detailed description]
**Marker 2:** [detailed description]
**Marker 3:** [detailed description]
"""

COMPOSITE_PROMPT = """
**Role:**
You are a visual composition expert. Your task is to take multiple 'product' images and seamlessly integrate them into a 'scene' image.

**Products to add (in order):**
{product_list}

**Scene to use:**
The final image provided (may have black padding, which you should ignore).

**Placement Instructions:**
{placement}

**Final Image Requirements:**
- The output image's style, lighting, shadows, reflections, and camera perspective must exactly match the original scene.
- Each product must be intelligently re-rendered to fit the context with proper perspective, scale, and realistic shadows.
- Products must have proportional realism relative to each other and the scene.
- All products must be present in the final composite image.
- Products should not overlap unless it makes realistic sense.
{extra}
The output should ONLY be the final, composed image with all products placed. Do not add any text or explanation.
"""


def build_location_prompt(marker_count: int) -> str:
    return LOCATION_PROMPT + f"\nThere are exactly {marker_count} markers in this image.\n"


def fallback_location_descriptions(marker_count: int) -> str:
    return "\n".join(f"**Marker {i + 1}:** at the specified location." for i in range(marker_count))


def build_composite_prompt(
    descriptions: Sequence[str],
    location_descriptions: str,
    extra: Optional[str] = None,
) -> str:
    product_list = "\n".join(f"{i + 1}. {text}" for i, text in enumerate(descriptions))
    extra_block = f"\n**Additional Instructions:**\n{extra.strip()}\n" if extra and extra.strip() else ""
    return COMPOSITE_PROMPT.format(
        product_list=product_list,
        placement=location_descriptions.strip(),
        extra=extra_block,
    )
