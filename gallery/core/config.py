from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Secrets(BaseSettings):
    """Provider credentials, loaded from the environment or a secrets management service."""

    model_config = SettingsConfigDict(
        env_prefix="GALLERY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    cloudinary_api_key: Optional[str] = Field(default=None, description="Cloudinary API key.")
    cloudinary_api_secret: Optional[str] = Field(default=None, description="Cloudinary API secret.")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "Secrets":
        return cls()

    @property
    def has_cloudinary_credentials(self) -> bool:
        return bool(self.cloudinary_api_key and self.cloudinary_api_secret)


class Settings(BaseSettings):
    """Centralised runtime configuration for the gallery ingestion pipeline."""

    model_config = SettingsConfigDict(
        env_prefix="GALLERY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Gallery Ingest"
    environment: str = Field(default="development", description="Deployment environment label.")
    version: str = Field(default="0.1.0")
    log_level: str = Field(default="info")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./gallery.db",
        description="SQLAlchemy compatible DSN.",
    )

    staging_dir: Path = Field(default_factory=lambda: Path("uploads"), description="Local holding area for uploads.")
    max_upload_size_bytes: int = Field(default=50 * 1024 * 1024, description="Hard limit for a single staged upload.")

    storage_backend: Literal["local", "cloudinary"] = Field(default="local", description="Active object storage provider.")
    local_storage_base_path: Path = Field(
        default_factory=lambda: Path("media"),
        description="Root directory for the filesystem object store.",
    )
    local_storage_public_url: str = Field(
        default="http://localhost:8000/media",
        description="Public URL prefix the filesystem object store issues URLs under.",
    )
    cloudinary_cloud_name: Optional[str] = None

    storage_root_folder: str = Field(default="portfolio", description="Top-level folder for every upload.")
    original_folder: str = Field(default="gallery")
    thumbnail_folder: str = Field(default="gallery/thumbnails")

    upload_image_format: Optional[str] = Field(default="webp", description="Provider-side format conversion for images.")
    upload_max_dimension: int = Field(default=2000, description="Provider-side max edge clamp.")
    upload_quality: str = Field(default="auto:good", description="Provider-side quality target.")

    storage_call_timeout_s: float = Field(default=10.0, description="Deadline raced against every storage call.")
    storage_client_timeout_s: float = Field(default=8.0, description="Timeout handed to the provider client itself.")
    storage_max_retries: int = Field(default=2, description="Retries for transient storage failures.")
    storage_retry_initial_delay_s: float = Field(default=0.5)
    storage_retry_backoff_base: float = Field(default=2.0)

    inspect_timeout_s: float = Field(default=10.0, description="Deadline for a single media inspection.")
    thumbnail_timeout_s: float = Field(default=30.0, description="Deadline for a single frame extraction.")
    ffprobe_binary: str = Field(default="ffprobe")
    ffmpeg_binary: str = Field(default="ffmpeg")

    thumbnail_width: int = Field(default=300)
    thumbnail_height: int = Field(default=200)
    thumbnail_quality: int = Field(default=80, ge=1, le=95)
    video_thumbnail_position: float = Field(default=0.1, ge=0.0, le=1.0, description="Fraction of duration to sample.")

    batch_max_concurrency: int = Field(default=5, ge=1, description="Parallel ingestion runs per batch.")

    secrets: Secrets = Field(default_factory=Secrets, description="Holds sensitive configuration.")

    @property
    def environment_lower(self) -> str:
        return self.environment.lower()

    @property
    def thumbnail_size(self) -> tuple[int, int]:
        return self.thumbnail_width, self.thumbnail_height

    def remote_folder(self, folder: str) -> str:
        root = self.storage_root_folder.strip("/")
        folder = folder.strip("/")
        if not root:
            return folder
        return f"{root}/{folder}" if folder else root


@lru_cache()
def get_settings() -> Settings:
    load_dotenv(".env", override=False)

    _ENV_ALIAS_MAP = {
        "GALLERY_ENV": "GALLERY_ENVIRONMENT",
        "GALLERY_DB_URL": "GALLERY_DATABASE_URL",
        "GALLERY_STORAGE": "GALLERY_STORAGE_BACKEND",
    }

    for source, target in _ENV_ALIAS_MAP.items():
        value = os.getenv(source)
        if value:
            os.environ[target] = value

    settings = Settings()

    secrets = Secrets.from_settings(settings)

    if (
        settings.environment_lower == "production"
        and settings.storage_backend == "cloudinary"
        and not (secrets.has_cloudinary_credentials and settings.cloudinary_cloud_name)
    ):
        raise ValueError("Production environment must configure Cloudinary credentials.")

    settings.secrets = secrets
    return settings


__all__ = ["Settings", "Secrets", "get_settings"]
