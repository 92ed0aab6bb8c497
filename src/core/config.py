"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Tiled Super-Resolution Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Model Settings
    # ==========================================================================
    MODEL_NAME: str = "noise0_scale2x"
    MODEL_URL: Optional[str] = None  # http(s) URL or local path of the ONNX/TorchScript model
    MODEL_CACHE_DIR: Path = Path("./ml_cache")
    MODEL_LOAD_TIMEOUT_SECONDS: float = 60.0
    MODEL_FETCH_TIMEOUT_SECONDS: float = 120.0
    PRELOAD_MODEL: bool = False

    # Priority order, probed once per session
    EXECUTION_BACKENDS: str = "cuda,coreml,cpu"

    # ==========================================================================
    # Upscale Defaults
    # ==========================================================================
    UPSCALE_SCALE: int = 2
    UPSCALE_OFFSET: int = 16
    UPSCALE_TILE_SIZE: int = 256

    MAX_IMAGE_DIMENSION: int = 4096
    MAX_IMAGE_SIZE_BYTES: int = 10485760  # 10MB

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()

# Ensure critical directories exist
settings.MODEL_CACHE_DIR.mkdir(parents=True, exist_ok=True)
