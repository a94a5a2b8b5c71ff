# settings.py
from urllib.parse import urlparse

from pydantic import BaseModel, Field
from dotenv import load_dotenv
import os

# Load variables from .env at import time
load_dotenv()


class ConfigError(Exception):
    pass


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


class Settings(BaseModel):
    heygen_api_key: str = Field(default=os.getenv("HEYGEN_API_KEY", ""))
    heygen_upload_url: str = Field(default=os.getenv("HEYGEN_UPLOAD_URL", "https://upload.heygen.com/v1/asset"))
    heygen_generate_url: str = Field(default=os.getenv("HEYGEN_GENERATE_URL", "https://api.heygen.com/v2/video/av4/generate"))
    heygen_status_url: str = Field(default=os.getenv("HEYGEN_STATUS_URL", "https://api.heygen.com/v1/video_status.get"))
    # Public URL of our webhook; left empty for polling-only deployments
    heygen_callback_url: str = Field(default=os.getenv("HEYGEN_CALLBACK_URL", ""))
    webhook_path: str = Field(default=os.getenv("WEBHOOK_PATH", "/heygen/callback"))
    database_url: str = Field(default=os.getenv("DATABASE_URL", "sqlite:///./avatar_videos.db"))
    max_upload_mb: int = Field(default=int(os.getenv("MAX_UPLOAD_MB", "50")))
    provider_timeout_sec: float = Field(default=float(os.getenv("PROVIDER_TIMEOUT_SEC", "60")))
    page_size: int = Field(default=int(os.getenv("PAGE_SIZE", "10")))
    cors_origins: str = Field(default=os.getenv("CORS_ORIGINS", "*"))
    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))
    debug: bool = Field(default=os.getenv("DEBUG", "false").lower() in {"1", "true", "yes"})

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def check(self) -> None:
        """
        Validate the process-wide configuration once at startup.
        A missing API key is fatal here rather than a per-request failure.
        """
        if not self.heygen_api_key.strip():
            raise ConfigError("HEYGEN_API_KEY not set")
        for name in ("heygen_upload_url", "heygen_generate_url", "heygen_status_url"):
            if not _is_http_url(getattr(self, name)):
                raise ConfigError(f"{name.upper()} must be an absolute http(s) URL")
        if self.heygen_callback_url and not _is_http_url(self.heygen_callback_url):
            raise ConfigError("HEYGEN_CALLBACK_URL must be an absolute http(s) URL")
        if not self.webhook_path.startswith("/"):
            raise ConfigError("WEBHOOK_PATH must start with '/'")
        if self.max_upload_mb <= 0 or self.page_size <= 0 or self.provider_timeout_sec <= 0:
            raise ConfigError("MAX_UPLOAD_MB, PAGE_SIZE and PROVIDER_TIMEOUT_SEC must be positive")


settings = Settings()
