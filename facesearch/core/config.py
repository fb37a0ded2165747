"""Configuration settings for the face video search service."""
import base64
import binascii
from typing import Dict, List, Optional

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitPolicy(BaseModel):
    """Window/limit pair for one rate-limited endpoint."""
    window_ms: int
    max_requests: int


class Settings(BaseSettings):
    """Application settings.

    These settings are loaded from environment variables with the following precedence:
    1. Environment variables
    2. .env file
    3. Default values

    Attributes:
        TTL_MS: Lifetime of a search session in milliseconds
        ALLOWED_VIDEO_HOSTS: Comma separated host allowlist for scraped URLs
        SITE_DESCRIPTORS: Path to the JSON file describing the sites to search
        ENCRYPTION_KEY: Base64 key used to seal embeddings held by the session store
    """
    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_prefix="",
    )

    # Core Settings
    PROJECT_NAME: str = "Face Video Search Service"
    VERSION: str = "0.1.0"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    @property
    def cors_origins(self) -> List[str]:
        """Get list of allowed origins."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    # Upload Settings
    MAX_FILE_SIZE: int = 10 * 1024 * 1024
    MIN_FILE_SIZE: int = 1024
    ALLOWED_IMAGE_MIME: str = "image/jpeg,image/png,image/webp"

    @property
    def allowed_image_mimes(self) -> List[str]:
        """Get list of accepted image MIME types."""
        return [mime.strip() for mime in self.ALLOWED_IMAGE_MIME.split(",") if mime.strip()]

    # Face Detection Settings
    MODEL_NAME: str = "buffalo_l"
    MODEL_CACHE_DIR: str = ".model_cache"
    EMBEDDING_DIM: int = 512
    MIN_FACE_CONFIDENCE: float = 0.5
    MAX_IMAGE_DIMENSION: int = 1024

    # Similarity Settings
    COARSE_SIMILARITY_FLOOR: float = 0.1
    DEFAULT_THRESHOLD: float = 0.7
    MAX_RESULTS: int = 100

    # Session Settings
    TTL_MS: int = 24 * 60 * 60 * 1000
    SESSION_SWEEP_INTERVAL_MS: int = 60 * 1000
    TOMBSTONE_TTL_MS: int = 60 * 60 * 1000
    ENCRYPTION_KEY: Optional[str] = None

    # Video Discovery Settings
    ALLOWED_VIDEO_HOSTS: str = ""
    SITE_DESCRIPTORS: Optional[str] = None
    SITE_TIMEOUT_MS: int = 10 * 1000
    THUMBNAIL_TIMEOUT_MS: int = 5 * 1000
    MAX_THUMBNAIL_SIZE: int = 5 * 1024 * 1024
    MAX_THUMBNAIL_PIXELS: int = 40_000_000
    PER_HOST_CONCURRENCY: int = 2
    CONCURRENCY_SITES: int = 3
    CONCURRENCY_THUMBS: int = 6
    TEMP_DIR: str = "temp/thumbnails"
    SCRAPER_USER_AGENT: str = "Mozilla/5.0 (compatible; FaceVideoSearch/0.1)"

    @property
    def allowed_video_hosts(self) -> List[str]:
        """Get list of hosts scraped URLs may point to."""
        return [host.strip().lower() for host in self.ALLOWED_VIDEO_HOSTS.split(",") if host.strip()]

    # Rate Limit Settings
    RATE_LIMIT_FACE_DETECT_WINDOW_MS: int = 60 * 1000
    RATE_LIMIT_FACE_DETECT_MAX: int = 10
    RATE_LIMIT_SIMILARITY_WINDOW_MS: int = 60 * 1000
    RATE_LIMIT_SIMILARITY_MAX: int = 100
    RATE_LIMIT_VIDEO_SEARCH_WINDOW_MS: int = 5 * 60 * 1000
    RATE_LIMIT_VIDEO_SEARCH_MAX: int = 3
    RATE_LIMIT_SWEEP_INTERVAL_MS: int = 5 * 60 * 1000

    @property
    def rate_limit_policies(self) -> Dict[str, RateLimitPolicy]:
        """Get the rate limit policy table keyed by endpoint."""
        return {
            "face-detect": RateLimitPolicy(
                window_ms=self.RATE_LIMIT_FACE_DETECT_WINDOW_MS,
                max_requests=self.RATE_LIMIT_FACE_DETECT_MAX,
            ),
            "similarity": RateLimitPolicy(
                window_ms=self.RATE_LIMIT_SIMILARITY_WINDOW_MS,
                max_requests=self.RATE_LIMIT_SIMILARITY_MAX,
            ),
            "video-search": RateLimitPolicy(
                window_ms=self.RATE_LIMIT_VIDEO_SEARCH_WINDOW_MS,
                max_requests=self.RATE_LIMIT_VIDEO_SEARCH_MAX,
            ),
        }

    # Audit Settings
    AUDIT_RETENTION: int = 1000

    # Optional settings with defaults
    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    @field_validator("ENCRYPTION_KEY")
    @classmethod
    def validate_encryption_key(cls, v: Optional[str]) -> Optional[str]:
        """Reject keys that are not base64 or decode to fewer than 16 bytes."""
        if v is None or not v.strip():
            return None
        try:
            raw = base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("ENCRYPTION_KEY must be base64 encoded")
        if len(raw) < 16:
            raise ValueError("ENCRYPTION_KEY must decode to at least 16 bytes")
        return v

    @field_validator("CONCURRENCY_SITES", "CONCURRENCY_THUMBS", "PER_HOST_CONCURRENCY")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("concurrency limits must be at least 1")
        return v


settings = Settings()
