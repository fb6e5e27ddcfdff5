import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

DEFAULT_STUDENT_CLASSES = "P4,P5,P6,S1,S2,S3"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime configuration, read from the environment (and .env) on creation."""

    database_url: str = Field(
        default_factory=lambda: os.getenv("LENDING_DATABASE_URL", "sqlite:///./library.db")
    )
    face_models_dir: Optional[str] = Field(
        default_factory=lambda: os.getenv("FACE_MODELS_DIR") or None
    )
    preload_models: bool = Field(default_factory=lambda: _env_bool("PRELOAD_FACE_MODELS", "true"))

    similarity_threshold: float = Field(
        default_factory=lambda: float(os.getenv("SIMILARITY_THRESHOLD", "0.5")), ge=0.0, le=1.0
    )
    max_descriptor_distance: float = Field(
        default_factory=lambda: float(os.getenv("MAX_DESCRIPTOR_DISTANCE", "0.8")), gt=0.0
    )
    extraction_retries: int = Field(
        default_factory=lambda: int(os.getenv("EXTRACTION_RETRIES", "2")), ge=0
    )
    extraction_retry_delay: float = Field(
        default_factory=lambda: float(os.getenv("EXTRACTION_RETRY_DELAY", "0.5")), ge=0.0
    )
    face_num_jitters: int = Field(default_factory=lambda: int(os.getenv("FACE_NUM_JITTERS", "1")), ge=1)

    max_image_chars: int = Field(
        default_factory=lambda: int(os.getenv("MAX_IMAGE_CHARS", "10000000")), gt=0
    )
    student_classes: List[str] = Field(
        default_factory=lambda: _env_list("STUDENT_CLASSES", DEFAULT_STUDENT_CLASSES)
    )

    cors_origins: List[str] = Field(default_factory=lambda: _env_list("CORS_ORIGINS", "*"))
    host: str = Field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = Field(default_factory=lambda: int(os.getenv("PORT", "4000")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())


def get_settings() -> Settings:
    return Settings()
