
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""


    app_name: str = "Call Review Pipeline"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"


    google_project_id: str = "trilletai"
    google_location: str = "us-central1"
    google_application_credentials: Optional[str] = None
    judge_model: str = "gemini-2.5-flash"
    judge_timeout_seconds: float = 120.0
    judge_max_retries: int = 0
    judge_temperature: float = 0.1
    judge_top_p: float = 0.95
    judge_top_k: int = 40
    judge_max_output_tokens: int = 8192


    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    call_reviews_table: str = "call_reviews"
    call_logs_table: str = "soundflare_call_logs"
    metrics_logs_table: str = "soundflare_metrics_logs"
    storage_timeout_seconds: float = 30.0


    agent_config_base_url: Optional[str] = None


    internal_webhook_secret: Optional[str] = None
    auto_review_on_queue: bool = False
    batch_review_default_limit: int = 50


    sse_keepalive_seconds: float = 30.0
    subscriber_queue_size: int = 100

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
