"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Background Remover"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = False

    HOST: str = "0.0.0.0"
    PORT: int = 3000

    # ==========================================================================
    # Upload Settings
    # ==========================================================================
    UPLOAD_DIR: str = "/tmp/uploads"
    MAX_UPLOAD_SIZE_BYTES: int = Field(3 * 1024 * 1024, gt=0)  # 3MB
    ALLOWED_MIME_TYPES: str = "image/jpeg,image/png,image/webp"

    # ==========================================================================
    # Output Settings
    # ==========================================================================
    DEFAULT_OUTPUT_FORMAT: str = "png"
    JPEG_QUALITY: float = Field(0.8, gt=0, le=1)  # lossy
    LOSSLESS_QUALITY: float = Field(1.0, gt=0, le=1)  # PNG / WEBP

    # ==========================================================================
    # Removal Settings
    # ==========================================================================
    REMBG_MODEL: str = "u2net"
    PRELOAD_MODEL: bool = False
    REMOVAL_TIMEOUT_SECONDS: float = Field(120.0, gt=0)
    MAX_CONCURRENT_REMOVALS: int = Field(2, ge=1)

    # Include exception details in 5xx responses
    EXPOSE_ERROR_DETAILS: bool = False

    # ==========================================================================
    # Static Files
    # ==========================================================================
    STATIC_DIR: str = "public"

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "*"

    @property
    def allowed_mime_types(self) -> List[str]:
        return [m.strip().lower() for m in self.ALLOWED_MIME_TYPES.split(",") if m.strip()]

    @property
    def max_upload_size_mb(self) -> float:
        return self.MAX_UPLOAD_SIZE_BYTES / (1024 * 1024)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )


# Global settings instance
settings = Settings()
