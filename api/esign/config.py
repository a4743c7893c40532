import os
from typing import Tuple

from pydantic import BaseModel

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./esign.db")
SECRET_KEY = os.getenv("SECRET_KEY", "devsecret")
ADMIN_ACCESS_TOKEN = os.getenv("ADMIN_ACCESS_TOKEN")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

STORAGE_PROVIDER = os.getenv("STORAGE_PROVIDER", "minio")
LOCAL_STORAGE_DIR = os.getenv("LOCAL_STORAGE_DIR", "./storage")
MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "minio:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "signing")
MINIO_SECURE = os.getenv("MINIO_SECURE", "false").lower() == "true"

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
WORKER_QUEUE = os.getenv("WORKER_QUEUE", "signing")

LOCK_BACKEND = os.getenv("LOCK_BACKEND", "database")
LOCK_TTL_SECONDS = int(os.getenv("LOCK_TTL_SECONDS", "60"))
LOCK_MAX_ATTEMPTS = int(os.getenv("LOCK_MAX_ATTEMPTS", "3"))
LOCK_RETRY_DELAY_SECONDS = float(os.getenv("LOCK_RETRY_DELAY_SECONDS", "1.0"))
STALLED_FINALIZE_AFTER_SECONDS = int(os.getenv("STALLED_FINALIZE_AFTER_SECONDS", "300"))

RENDERER = os.getenv("RENDERER", "local")
RENDERER_URL = os.getenv("RENDERER_URL", "http://renderer:3001/render")
RENDER_TIMEOUT_SECONDS = float(os.getenv("RENDER_TIMEOUT_SECONDS", "30"))
RENDER_MAX_ATTEMPTS = int(os.getenv("RENDER_MAX_ATTEMPTS", "3"))
UPLOAD_BACKOFF_SECONDS = os.getenv("UPLOAD_BACKOFF_SECONDS", "2,4,8")

OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))
OTP_LOCKOUT_MINUTES = int(os.getenv("OTP_LOCKOUT_MINUTES", "30"))
OTP_DEFAULT_EXPIRY_MINUTES = int(os.getenv("OTP_DEFAULT_EXPIRY_MINUTES", "10"))

RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "100"))
IDEMPOTENCY_TTL_HOURS = int(os.getenv("IDEMPOTENCY_TTL_HOURS", "24"))
PRESIGN_TTL_SECONDS = int(os.getenv("PRESIGN_TTL_SECONDS", "3600"))
WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))
WEBHOOK_BACKOFF_SECONDS = os.getenv("WEBHOOK_BACKOFF_SECONDS", "2,4,8")
FINALIZE_INLINE = os.getenv("FINALIZE_INLINE", "true").lower() == "true"
SMS_GATEWAY_URL = os.getenv("SMS_GATEWAY_URL")


def _parse_backoff(raw: str) -> Tuple[float, ...]:
    return tuple(float(part) for part in raw.split(",") if part.strip())


class Settings(BaseModel):
    """Per-request view of the service configuration."""

    secret_key: str = SECRET_KEY
    admin_access_token: str | None = ADMIN_ACCESS_TOKEN
    public_base_url: str = PUBLIC_BASE_URL

    storage_provider: str = STORAGE_PROVIDER
    lock_backend: str = LOCK_BACKEND
    lock_ttl_seconds: int = LOCK_TTL_SECONDS
    lock_max_attempts: int = LOCK_MAX_ATTEMPTS
    lock_retry_delay_seconds: float = LOCK_RETRY_DELAY_SECONDS
    stalled_finalize_after_seconds: int = STALLED_FINALIZE_AFTER_SECONDS

    renderer: str = RENDERER
    renderer_url: str = RENDERER_URL
    render_timeout_seconds: float = RENDER_TIMEOUT_SECONDS
    render_max_attempts: int = RENDER_MAX_ATTEMPTS
    upload_backoff_seconds: Tuple[float, ...] = _parse_backoff(UPLOAD_BACKOFF_SECONDS)

    otp_max_attempts: int = OTP_MAX_ATTEMPTS
    otp_lockout_minutes: int = OTP_LOCKOUT_MINUTES
    otp_default_expiry_minutes: int = OTP_DEFAULT_EXPIRY_MINUTES

    rate_limit_per_minute: int = RATE_LIMIT_PER_MINUTE
    idempotency_ttl_hours: int = IDEMPOTENCY_TTL_HOURS
    presign_ttl_seconds: int = PRESIGN_TTL_SECONDS
    webhook_tolerance_seconds: int = WEBHOOK_TOLERANCE_SECONDS
    webhook_backoff_seconds: Tuple[float, ...] = _parse_backoff(WEBHOOK_BACKOFF_SECONDS)
    finalize_inline: bool = FINALIZE_INLINE

    model_config = {"frozen": True}


def get_settings() -> Settings:
    return Settings()
