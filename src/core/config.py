"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Snowy Image Pipeline"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Execution Pools
    # ==========================================================================
    # Blocking network/file reads
    IO_WORKERS: int = 8
    # Pixel work; None means os.cpu_count()
    CPU_WORKERS: Optional[int] = None

    # ==========================================================================
    # Fetch Settings
    # ==========================================================================
    # None disables the internal timeout; a hung transfer then waits on the transport
    FETCH_TIMEOUT_SECONDS: Optional[float] = None
    FETCH_CHUNK_SIZE: int = 65536
    FETCH_USER_AGENT: str = "snowy-pipeline/1.0"
    MAX_IMAGE_SIZE_BYTES: int = 10485760  # 10MB

    # ==========================================================================
    # Filter Settings
    # ==========================================================================
    SNOW_SEED: Optional[int] = None

    # ==========================================================================
    # UI Settings
    # ==========================================================================
    LOCALE: str = "en"

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
