# app/main.py
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from concurrent.futures import ThreadPoolExecutor
import threading
import logging
import os

from app.config.settings import settings
from app.delivery.api.composite import router
from app.domain.compositor_service import CompositorService
from app.domain.errors import ConfigurationError
from app.infrastructure.genai.gemini_model import GeminiCompositeModel

logging.getLogger("google_genai").setLevel(logging.WARNING)
logger = logging.getLogger("uvicorn.error")

# --- Lazy service bootstrap state ---
_service_lock = threading.Lock()

def _ensure_service(app: FastAPI) -> None:
    with _service_lock:  # Always acquire lock first
        if getattr(app.state, "compositor_service", None) is not None:
            return
        logger.info("Memulai inisialisasi CompositorService dan GeminiCompositeModel (lazy-init)...")
        try:
            model = GeminiCompositeModel()
        except ConfigurationError as e:
            # Endpoint answers 503 until the key is configured
            logger.error(f"Inisialisasi model gagal: {e}")
            return
        app.state.compositor_service = CompositorService(
            model=model,
            executor=app.state.executor,
        )
        logger.info("Inisialisasi service selesai.")

@asynccontextmanager
async def lifespan(app: FastAPI):
    max_workers = min(settings.MAX_WORKERS, os.cpu_count() or 1)
    app.state.executor = ThreadPoolExecutor(max_workers=max_workers)
    if not hasattr(app.state, "compositor_service"):
        app.state.compositor_service = None
    logger.info(f"Service '{settings.PROJECT_NAME}' dimulai (mode: {settings.ENVIRONMENT}).")
    logger.info(f"Shared ThreadPoolExecutor dibuat dengan {max_workers} workers.")
    yield
    logger.info("Menutup ThreadPoolExecutor...")
    app.state.executor.shutdown(wait=True)
    logger.info("Service berhenti.")

app = FastAPI(
    title="Scene Composer Service",
    description="Places product images onto a scene and renders a photorealistic composite with a generative image model",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_HOSTS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Lazy-load only for API routes
@app.middleware("http")
async def lazy_boot(request: Request, call_next):
    # Inisialisasi service hanya jika path request berada di bawah API_V1_STR
    if request.url.path.startswith(settings.API_V1_STR):
        _ensure_service(request.app)
    return await call_next(request)

app.include_router(router, prefix=settings.API_V1_STR)

@app.get("/")
async def root():
    return {"message": "Scene Composer Service", "version": "1.0.0", "status": "ok"}

@app.get("/health")
async def health_check():
    return {
        "status": "ok",
        "service": settings.PROJECT_NAME,
        "model_ready": getattr(app.state, "compositor_service", None) is not None,
        "target_dimension": settings.TARGET_DIMENSION,
    }
