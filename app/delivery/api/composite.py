# app/delivery/api/composite.py
from fastapi import APIRouter, Request, Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from app.delivery.schemas.body import CompositeBody, CompositeResponse
from app.config.settings import settings
from app.domain.errors import (
    CompositeValidationError,
    DecodeError,
    ExternalBoundaryError,
    ImageProcessingError,
)
from app.domain.models import CompositeResult, ProductPlacement
from app.infrastructure.cloudinary.upload_file import is_configured, upload_image_buffer
from app.infrastructure.sources import load_many
from typing import Optional
import secrets
import threading
import logging
import traceback
import asyncio
import uuid

router = APIRouter()
security = HTTPBasic()
logger = logging.getLogger("uvicorn.error")

def verify_basic_auth(creds: HTTPBasicCredentials = Depends(security)) -> None:
    ok_user = secrets.compare_digest(creds.username, settings.BASIC_AUTH_USERNAME)
    ok_pass = secrets.compare_digest(creds.password, settings.BASIC_AUTH_PASSWORD)
    if not (ok_user and ok_pass):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Basic"},
        )

async def _publish(request: Request, result: CompositeResult) -> Optional[str]:
    executor = getattr(request.app.state, "executor", None)
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(
            executor, upload_image_buffer, result.image, f"{result.run_id}_composite"
        )
    except Exception as e:
        logger.error(f"[{result.run_id}] Upload Cloudinary gagal: {e}", exc_info=True)
        return None

@router.post("/composite", dependencies=[Depends(verify_basic_auth)], response_model=CompositeResponse)
async def create_composite(request: Request, body: CompositeBody):
    request_id = body.id or uuid.uuid4().hex[:12]
    logger.info(f"=== ENDPOINT START for {request_id} (threads={threading.active_count()}) ===")

    try:
        service = getattr(request.app.state, "compositor_service", None)
        if service is None:
            logger.error(f"Service not initialized for request {request_id}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Service is not ready. Please try again in a moment.",
            )

        # Reject empty/oversized requests before touching any source
        service.validate(body.products)

        # Abort fast if the client already closed
        if await request.is_disconnected():
            logger.warning(f"[{request_id}] Client already disconnected")
            raise HTTPException(status_code=499, detail="Client closed request")

        try:
            scene_bytes, *product_bytes = await load_many([body.scene] + [p.image for p in body.products])
            placements = [
                ProductPlacement(image=data, label=p.label, position=p.position)
                for data, p in zip(product_bytes, body.products)
            ]
            result = await asyncio.wait_for(
                service.compose(scene_bytes, placements, prompt=body.prompt, run_id=request_id),
                timeout=settings.ENDPOINT_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error(f"=== ENDPOINT TIMEOUT for {request_id} after {settings.ENDPOINT_TIMEOUT_SECONDS}s ===")
            raise HTTPException(status_code=504, detail="AI processing timed out")

        url = await _publish(request, result) if settings.PUBLISH_RESULTS and is_configured() else None
        logger.info(f"=== ENDPOINT SUCCESS for {request_id} ===")
        return CompositeResponse(
            run_id=result.run_id,
            final_image=result.image.to_data_url(),
            width=result.dimensions.width,
            height=result.dimensions.height,
            debug_image=result.marked_scene.to_data_url(),
            final_prompt=result.prompt,
            raw_response=result.raw_response if settings.DEBUG else None,
            url=url,
        )

    except HTTPException:
        raise
    except CompositeValidationError as e:
        logger.warning(f"[{request_id}] Request ditolak: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict())
    except DecodeError as e:
        logger.warning(f"[{request_id}] Gambar tidak valid: {e}")
        raise HTTPException(status_code=422, detail=e.to_dict())
    except ExternalBoundaryError as e:
        logger.error(f"[{request_id}] Model gagal: {e}")
        detail = e.to_dict()
        if not settings.DEBUG:
            detail["details"] = {k: v for k, v in detail["details"].items() if k != "raw_response"}
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)
    except ImageProcessingError as e:
        logger.error(f"[{request_id}] Image processing gagal di tahap {e.stage}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.to_dict())
    except Exception as e:
        logger.error(f"=== ENDPOINT ERROR for {request_id}: {e} ===\n{traceback.format_exc()}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Terjadi kesalahan internal pada server.",
        )
