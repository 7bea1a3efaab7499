# app/infrastructure/cloudinary/upload_file.py
import os
from io import BytesIO
from typing import Optional

import cloudinary, cloudinary.uploader
from app.config.settings import settings
from app.domain.models import ImageBuffer


def configure() -> None:
    # SDK hanya membaca CLOUDINARY_URL dari os.environ, bukan dari .env
    if settings.CLOUDINARY_URL:
        os.environ.setdefault("CLOUDINARY_URL", settings.CLOUDINARY_URL)
        cloudinary.reset_config()
    split = dict(
        cloud_name=settings.CLOUDINARY_CLOUD_NAME,
        api_key=settings.CLOUDINARY_API_KEY,
        api_secret=settings.CLOUDINARY_API_SECRET,
    )
    cloudinary.config(secure=True, **{k: v for k, v in split.items() if v})


# Configure once (supports CLOUDINARY_URL or split vars)
configure()

_EXTENSIONS = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}


def is_configured() -> bool:
    return bool(settings.CLOUDINARY_URL or (settings.CLOUDINARY_CLOUD_NAME and settings.CLOUDINARY_API_KEY))


def upload_image_buffer(
    image: ImageBuffer,
    public_id: str,
    folder: Optional[str] = None,
    overwrite: bool = True,
    tags: Optional[list[str]] = None,
) -> str:
    # Bytes are already encoded by the pipeline; no re-encode here
    fmt = _EXTENSIONS.get(image.mime_type, "jpg")
    buf = BytesIO(image.data)

    res = cloudinary.uploader.upload(
        buf,
        resource_type="image",
        folder=folder or settings.CLOUDINARY_FOLDER,
        public_id=public_id,
        overwrite=overwrite,
        format=fmt,              # final extension in Cloudinary
        tags=tags or [],
    )
    return res["secure_url"]
