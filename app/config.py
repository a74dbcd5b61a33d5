from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./app.db"

    # JWT (identity provider shares the signing secret)
    secret_key: str = "your-secret-key-change-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7  # 7 days

    # Frontend URL for CORS
    frontend_url: str = "http://localhost:3000"

    log_level: str = "INFO"

    # AI gateway (OpenAI-compatible) for openai / anthropic / xai models
    ai_gateway_api_key: str = ""
    ai_gateway_base_url: str = "https://ai-gateway.vercel.sh/v1"
    upstream_timeout_seconds: float = 120.0

    # Vertex AI (Gemini) for the "google" provider
    vertex_project_id: str = ""
    vertex_location: str = "us-central1"
    vertex_credentials_path: str = ""  # path to service account JSON; empty = use ADC

    # Providers answering every prompt, in display order
    enabled_providers: str = "openai,anthropic,xai"

    # Stream orchestration
    metadata_wait_seconds: float = 2.0
    persist_attempts: int = 2
    reservation_ttl_seconds: int = 300
    inflight_wait_seconds: float = 30.0
    inflight_poll_seconds: float = 0.5

    # Redis (optional cache for finished responses; empty = no Redis, DB only)
    redis_url: str = ""  # e.g. redis://localhost:6379/0
    response_cache_ttl_seconds: int = 86400

    chat_list_limit: int = 50

    class Config:
        env_file = ".env"

    @property
    def enabled_provider_ids(self) -> list[str]:
        return [p.strip().lower() for p in self.enabled_providers.split(",") if p.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
