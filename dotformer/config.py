# dotformer/config.py
import warnings
from decimal import Decimal
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./dotformer.db"
    admin_token: str = ""  # Required for /v1/admin routes

    # Blob storage
    storage_backend: str = "s3"  # "s3" or "memory"
    source_bucket: str = "dotformer-uploads"
    target_bucket: str = ""  # Falls back to source_bucket
    aws_region: str = "us-east-1"
    s3_endpoint_url: str = ""
    cdn_domain: str = ""
    cache_control: str = "public, max-age=31536000, immutable"
    max_upload_bytes: int = 20_000_000
    store_retry_attempts: int = 3

    # Transform engine
    transform_engine: str = "local"  # "local" (Pillow) or "http"
    transformer_url: str = "http://localhost:3001"
    transformer_timeout: float = 30.0

    # Billing
    billing_currency: str = "USD"
    free_plan_name: str = "Free"
    minimum_charges: dict[str, Decimal] = {
        "Basic": Decimal("5.00"),
        "Professional": Decimal("20.00"),
    }
    billing_schedule_enabled: bool = False

    # Usage recording
    usage_queue_size: int = 10_000

    class Config:
        env_file = ".env"

    @property
    def transformed_bucket(self) -> str:
        return self.target_bucket or self.source_bucket

    def validate_secrets(self) -> None:
        """Validate that required secrets are configured.

        Call this at application startup to fail fast if secrets are missing.
        """
        if not self.admin_token:
            raise ValueError(
                "Required secrets not configured: ADMIN_TOKEN. "
                "Set this environment variable before starting the server."
            )


settings = Settings()

# Warn at import time if secrets are not configured (don't fail yet for tests)
if not settings.admin_token:
    warnings.warn(
        "ADMIN_TOKEN not configured. "
        "The server will fail to start. Set this environment variable.",
        UserWarning,
    )
