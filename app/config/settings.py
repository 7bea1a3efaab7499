# config/settings.py
from pydantic import Field
from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    # API
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Scene Composer"

    # CORS
    ALLOWED_HOSTS: List[str] = ["*"]

    # Auth
    BASIC_AUTH_USERNAME: str = "admin"
    BASIC_AUTH_PASSWORD: str = "secret"

    # Pipeline
    TARGET_DIMENSION: int = 1024
    JPEG_QUALITY: int = 95
    MAX_PRODUCTS: int = Field(12, ge=1, le=9999)  # label marker maks 4 digit
    SURFACE_POOL_SIZE: int = 4
    MAX_WORKERS: int = 4
    ENDPOINT_TIMEOUT_SECONDS: int = 120
    REQUEST_TIMEOUT: int = 30

    # Gemini
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_IMAGE_MODEL: str = "gemini-2.5-flash-image-preview"
    GEMINI_TEXT_MODEL: str = "gemini-2.5-flash-lite"

    # Env
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Cloudinary (either use CLOUDINARY_URL or the 3 fields below)
    CLOUDINARY_URL: Optional[str] = None
    CLOUDINARY_CLOUD_NAME: Optional[str] = None
    CLOUDINARY_API_KEY: Optional[str] = None
    CLOUDINARY_API_SECRET: Optional[str] = None
    CLOUDINARY_FOLDER: str = "scene-composites"
    PUBLISH_RESULTS: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
