# app/domain/compositor_service.py
import asyncio
import functools
import logging
import os
import time
import traceback
import uuid
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence

import psutil

from app.config.settings import settings
from app.domain.composite_model import CompositeModel
from app.domain.errors import (
    CompositeValidationError,
    ConfigurationError,
    DecodeError,
    ExternalBoundaryError,
    ImageProcessingError,
    SceneComposerError,
)
from app.domain.models import (
    CompositeRequest,
    CompositeResult,
    Dimensions,
    ImageBuffer,
    Marker,
    ModelSubmission,
    PaddedSquareImage,
    PreparedProduct,
    ProductPlacement,
    palette_color,
)
from app.domain.prompts import build_composite_prompt, fallback_location_descriptions
from app.infrastructure.cv.image_process import (
    crop_to_aspect_ratio,
    letterbox_resize,
    probe_dimensions,
)
from app.infrastructure.cv.markers import annotate_markers
from app.infrastructure.cv.surface_pool import SurfacePool

# --- PENGATURAN LOGGER ---
logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', '%Y-%m-%d %H:%M:%S')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False


class CompositeStage(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    RESIZING = "resizing"
    ANNOTATING = "annotating"
    AWAITING_EXTERNAL_RESULT = "awaiting_external_result"
    CROPPING = "cropping"
    DONE = "done"
    FAILED = "failed"


_S = CompositeStage
TRANSITIONS: Dict[CompositeStage, FrozenSet[CompositeStage]] = {
    _S.IDLE: frozenset({_S.PROBING}),
    _S.PROBING: frozenset({_S.RESIZING, _S.FAILED}),
    _S.RESIZING: frozenset({_S.ANNOTATING, _S.FAILED}),
    _S.ANNOTATING: frozenset({_S.AWAITING_EXTERNAL_RESULT, _S.FAILED}),
    _S.AWAITING_EXTERNAL_RESULT: frozenset({_S.CROPPING, _S.FAILED}),
    _S.CROPPING: frozenset({_S.DONE, _S.FAILED}),
    _S.DONE: frozenset(),
    _S.FAILED: frozenset(),
}


class CompositeRun:
    """Single-pass lifecycle of one composite request."""

    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.stage = CompositeStage.IDLE
        self.history: List[CompositeStage] = [self.stage]
        self.timings: Dict[str, float] = {}
        self.error: Optional[BaseException] = None
        self._stage_started = time.perf_counter()

    def advance(self, next_stage: CompositeStage) -> None:
        if next_stage not in TRANSITIONS[self.stage]:
            raise ImageProcessingError(
                f"Illegal transition {self.stage.value} -> {next_stage.value}",
                stage="state",
                details={"run_id": self.run_id},
            )
        now = time.perf_counter()
        if self.stage is not CompositeStage.IDLE:
            self.timings[self.stage.value] = now - self._stage_started
        self._stage_started = now
        self.stage = next_stage
        self.history.append(next_stage)

    def fail(self, error: BaseException) -> None:
        self.error = error
        if CompositeStage.FAILED in TRANSITIONS[self.stage]:
            self.advance(CompositeStage.FAILED)

    @property
    def finished(self) -> bool:
        return not TRANSITIONS[self.stage]


def _memory_mb() -> Optional[float]:
    try:
        return psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024
    except psutil.Error:
        return None


def _materialize(source):
    # File handles are read once so concurrent stages never share a cursor
    if hasattr(source, "read"):
        if hasattr(source, "seek"):
            source.seek(0)
        return source.read()
    return source


# Label marker maksimal 4 karakter
MAX_MARKER_LABEL = 9999


def build_markers(products: Sequence[ProductPlacement]) -> List[Marker]:
    return [
        Marker(position=product.position, color=palette_color(index), label=str(index + 1))
        for index, product in enumerate(products)
    ]


class CompositorService:
    def __init__(
        self,
        model: CompositeModel,
        executor: Optional[ThreadPoolExecutor] = None,
        target_dimension: Optional[int] = None,
        quality: Optional[int] = None,
        max_products: Optional[int] = None,
        pool: Optional[SurfacePool] = None,
    ):
        self.model = model
        self.executor = executor
        self.target_dimension = target_dimension or settings.TARGET_DIMENSION
        self.quality = quality or settings.JPEG_QUALITY
        self.max_products = max_products or settings.MAX_PRODUCTS
        if not 1 <= self.max_products <= MAX_MARKER_LABEL:
            raise ConfigurationError(f"max_products must be between 1 and {MAX_MARKER_LABEL}, got {self.max_products}")
        self.pool = pool

    async def _run_cpu(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(fn, *args, **kwargs))

    def validate(self, products: Sequence[ProductPlacement]) -> None:
        if len(products) < 1:
            raise CompositeValidationError("At least one product must be placed on the scene", field="products")
        if len(products) > self.max_products:
            raise CompositeValidationError(
                f"Too many products: {len(products)} (max {self.max_products})", field="products"
            )

    async def _resize(self, source) -> PaddedSquareImage:
        return await self._run_cpu(
            letterbox_resize, source, self.target_dimension, quality=self.quality, pool=self.pool
        )

    async def _describe_locations(self, marked_scene: ImageBuffer, marker_count: int, run_id: str) -> str:
        try:
            text = await self.model.describe_locations(marked_scene, marker_count)
            if text and text.strip():
                return text
            logger.warning(f"[{run_id}] Deskripsi lokasi kosong, memakai placeholder.")
        except Exception as e:
            # Enrichment only; the composite still goes ahead with generic placement text
            logger.warning(f"[{run_id}] Gagal membuat deskripsi lokasi: {type(e).__name__}: {e}")
        return fallback_location_descriptions(marker_count)

    def _crop_result(self, image: ImageBuffer, scene_dims: Dimensions) -> ImageBuffer:
        returned = probe_dimensions(image)
        target = self.target_dimension
        if returned.width == returned.height and returned.width != target:
            logger.info(f"Hasil model {returned.width}x{returned.height}, diskalakan ke {target}x{target}.")
            image = letterbox_resize(image, target, quality=self.quality, pool=self.pool).buffer
        return crop_to_aspect_ratio(image, scene_dims, target, quality=self.quality)

    async def compose(
        self,
        scene_source,
        products: Sequence[ProductPlacement],
        prompt: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> CompositeResult:
        products = list(products)
        self.validate(products)

        run = CompositeRun(run_id)
        logger.info(f"=== START COMPOSITE Run ID: {run.run_id} ({len(products)} produk) ===")
        overall_start_time = time.perf_counter()

        try:
            # TAHAP 1: Probe dimensi scene asli
            run.advance(CompositeStage.PROBING)
            try:
                scene_source = _materialize(scene_source)
                product_sources = [_materialize(p.image) for p in products]
            except OSError as e:
                raise DecodeError(f"Could not read image source: {e}") from e
            scene_dims = await self._run_cpu(probe_dimensions, scene_source)
            logger.info(f"Tahap 1/5: Scene {scene_dims.width}x{scene_dims.height} untuk Run ID: {run.run_id}")

            # TAHAP 2: Letterbox scene dan semua produk (paralel)
            run.advance(CompositeStage.RESIZING)
            scene_padded, *products_padded = await asyncio.gather(
                self._resize(scene_source),
                *(self._resize(src) for src in product_sources),
            )
            request = CompositeRequest(
                scene=scene_padded,
                products=[
                    PreparedProduct(image=padded, position=p.position, description=p.label)
                    for padded, p in zip(products_padded, products)
                ],
                scene_dimensions=scene_dims,
            )
            logger.info(
                f"Tahap 2/5: Resize selesai ({len(products_padded) + 1} gambar, "
                f"target {self.target_dimension}px) untuk Run ID: {run.run_id}"
            )
            memory_mb = _memory_mb()
            if memory_mb is not None:
                logger.info(f"Memory after resize: {memory_mb:.1f}MB for Run ID: {run.run_id}")

            # TAHAP 3: Marker bernomor pada scene
            run.advance(CompositeStage.ANNOTATING)
            markers = build_markers(products)
            marked_scene = await self._run_cpu(
                annotate_markers, request.scene, markers, request.scene_dimensions, quality=self.quality
            )
            logger.info(f"Tahap 3/5: {len(markers)} marker digambar untuk Run ID: {run.run_id}")

            # TAHAP 4: Panggil model generatif
            run.advance(CompositeStage.AWAITING_EXTERNAL_RESULT)
            locations = await self._describe_locations(marked_scene.buffer, len(markers), run.run_id)
            final_prompt = build_composite_prompt(
                [p.description for p in request.products], locations, extra=prompt
            )
            submission = ModelSubmission(
                ordered_product_images=[p.image.buffer for p in request.products],
                product_descriptions=[p.description for p in request.products],
                clean_scene_image=request.scene.buffer,
                marked_scene_image=marked_scene.buffer,
                freeform_prompt=final_prompt,
            )
            try:
                response = await self.model.generate(submission)
            except SceneComposerError:
                raise
            except Exception as e:
                raise ExternalBoundaryError(f"Model call failed: {type(e).__name__}: {e}") from e
            if response is None or response.image is None:
                raise ExternalBoundaryError(
                    "The AI model did not return an image. Please try again.",
                    raw_response=response.raw if response is not None else None,
                )
            logger.info(f"Tahap 4/5: Model mengembalikan gambar ({len(response.image.data)} bytes) untuk Run ID: {run.run_id}")

            # TAHAP 5: Crop kembali ke rasio aspek asli
            run.advance(CompositeStage.CROPPING)
            final_image = await self._run_cpu(self._crop_result, response.image, scene_dims)
            run.advance(CompositeStage.DONE)

            final_dims = await self._run_cpu(probe_dimensions, final_image)
            overall_duration = time.perf_counter() - overall_start_time
            logger.info(
                f"=== COMPLETED COMPOSITE Run ID: {run.run_id} -> {final_dims.width}x{final_dims.height} "
                f"dalam {overall_duration:.2f} detik ==="
            )
            return CompositeResult(
                image=final_image,
                dimensions=final_dims,
                marked_scene=marked_scene.buffer,
                prompt=final_prompt,
                raw_response=response.raw,
                run_id=run.run_id,
                timings=dict(run.timings),
            )

        except Exception as e:
            failed_at = run.stage.value
            run.fail(e)
            logger.error(
                f"=== FAILED COMPOSITE Run ID {run.run_id} at stage {failed_at}: "
                f"{e}\n{traceback.format_exc()} ==="
            )
            raise
