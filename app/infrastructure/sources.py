# app/infrastructure/sources.py
import asyncio
import base64
import binascii
import logging
import os
from typing import List, Optional

import aiofiles
import aiohttp

from app.config.settings import settings
from app.domain.errors import DecodeError
from app.domain.models import ImageBuffer

logger = logging.getLogger(__name__)


async def load_image_bytes(src: str, session: aiohttp.ClientSession, timeout: Optional[int] = None) -> bytes:
    """Resolve a URL, file path, data URL or raw base64 string to bytes."""
    timeout = timeout or settings.REQUEST_TIMEOUT
    try:
        if src.startswith(("http://", "https://")):
            client_timeout = aiohttp.ClientTimeout(total=timeout)
            async with session.get(src, timeout=client_timeout) as response:
                response.raise_for_status()
                return await response.read()
        if os.path.isfile(src):
            async with aiofiles.open(src, "rb") as f:
                return await f.read()
        if src.startswith("data:"):
            return ImageBuffer.from_data_url(src).data
        return base64.b64decode(src, validate=True)
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
        logger.warning(f"Gagal memuat gambar dari sumber '{src[:70]}...': {type(e).__name__}")
        raise DecodeError(f"Could not load image source ({type(e).__name__})", details={"source": src[:70]}) from e
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Sumber gambar bukan base64 yang valid: '{src[:70]}...'")
        raise DecodeError("Image source is neither a URL, a file nor valid base64", details={"source": src[:70]}) from e


async def load_many(sources: List[str]) -> List[bytes]:
    async with aiohttp.ClientSession() as session:
        tasks = [load_image_bytes(src, session) for src in sources]
        return await asyncio.gather(*tasks)
