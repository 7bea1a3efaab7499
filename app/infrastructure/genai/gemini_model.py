# app/infrastructure/genai/gemini_model.py
import base64
import logging
from typing import Optional

from google import genai
from google.genai import types

from app.config.settings import settings
from app.domain.errors import ConfigurationError
from app.domain.models import ImageBuffer, ModelResponse, ModelSubmission
from app.domain.prompts import build_location_prompt

# --- Pengaturan Logger ---
logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s [%(levelname)s] [GEMINI] %(message)s', '%Y-%m-%d %H:%M:%S')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False


def _image_part(buffer: ImageBuffer) -> types.Part:
    return types.Part.from_bytes(data=buffer.data, mime_type=buffer.mime_type)


def _normalize_inline_data(data) -> bytes:
    if isinstance(data, bytes):
        return data
    if isinstance(data, str):
        return base64.b64decode(data)
    raise TypeError(f"Unsupported inline data type: {type(data)}")


def extract_image(response) -> Optional[ImageBuffer]:
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            inline = getattr(part, "inline_data", None)
            if inline and getattr(inline, "data", None):
                return ImageBuffer(
                    data=_normalize_inline_data(inline.data),
                    mime_type=getattr(inline, "mime_type", None) or "image/png",
                )
    return None


def summarize_response(response) -> str:
    summaries = []
    for idx, candidate in enumerate(getattr(response, "candidates", None) or []):
        reason = getattr(candidate, "finish_reason", None) or "-"
        part_types = []
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            if getattr(part, "inline_data", None):
                part_types.append("inline_data")
            elif getattr(part, "text", None):
                part_types.append(f"text({part.text[:200]!r})")
            else:
                part_types.append(type(part).__name__)
        summaries.append(f"cand{idx}: reason={reason}, parts={','.join(part_types) or 'none'}")
    feedback = getattr(response, "prompt_feedback", None)
    if feedback:
        summaries.append(f"prompt_feedback={feedback}")
    return "; ".join(summaries) if summaries else "no candidates"


class GeminiCompositeModel:
    def __init__(
        self,
        api_key: Optional[str] = None,
        image_model: Optional[str] = None,
        text_model: Optional[str] = None,
        client: Optional[genai.Client] = None,
    ):
        if client is None:
            api_key = api_key or settings.GEMINI_API_KEY
            if not api_key:
                raise ConfigurationError("GEMINI_API_KEY is not configured", details={"missing": ["GEMINI_API_KEY"]})
            client = genai.Client(api_key=api_key)
        self.client = client
        self.image_model = image_model or settings.GEMINI_IMAGE_MODEL
        self.text_model = text_model or settings.GEMINI_TEXT_MODEL

    async def describe_locations(self, marked_scene: ImageBuffer, marker_count: int) -> str:
        logger.info(f"Meminta deskripsi lokasi untuk {marker_count} marker ({self.text_model}).")
        response = await self.client.aio.models.generate_content(
            model=self.text_model,
            contents=[build_location_prompt(marker_count), _image_part(marked_scene)],
        )
        return response.text or ""

    async def generate(self, submission: ModelSubmission) -> ModelResponse:
        parts = [_image_part(img) for img in submission.ordered_product_images]
        parts.append(_image_part(submission.clean_scene_image))
        parts.append(submission.freeform_prompt)

        logger.info(
            f"Mengirim {len(submission.ordered_product_images)} produk + scene ke {self.image_model}."
        )
        response = await self.client.aio.models.generate_content(
            model=self.image_model,
            contents=parts,
            config=types.GenerateContentConfig(response_modalities=["TEXT", "IMAGE"]),
        )
        image = extract_image(response)
        raw = summarize_response(response)
        if image is None:
            logger.warning(f"Model tidak mengembalikan gambar: {raw}")
        return ModelResponse(image=image, raw=raw)
