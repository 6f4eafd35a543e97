from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "ChoreCoach"

    # Per-capability quotas. Issuance is the tightest, transcription the loosest.
    rate_limit_token_capacity: int = Field(default=5, ge=1)
    rate_limit_token_window_seconds: int = Field(default=60, ge=1)
    rate_limit_text_generation_capacity: int = Field(default=10, ge=1)
    rate_limit_text_generation_window_seconds: int = Field(default=60, ge=1)
    rate_limit_speech_synthesis_capacity: int = Field(default=20, ge=1)
    rate_limit_speech_synthesis_window_seconds: int = Field(default=60, ge=1)
    rate_limit_transcription_capacity: int = Field(default=30, ge=1)
    rate_limit_transcription_window_seconds: int = Field(default=60, ge=1)

    rate_limit_eviction_grace_seconds: int = Field(default=60, ge=0)
    rate_limit_cleanup_interval_seconds: int = Field(default=300, ge=1)
    rate_limit_shards: int = Field(default=16, ge=1)

    token_url: str | None = Field(default=None, pattern=r"^https?://")
    transcribe_url: str | None = Field(default=None, pattern=r"^https?://")
    respond_url: str | None = Field(default=None, pattern=r"^https?://")
    speech_url: str | None = Field(default=None, pattern=r"^https?://")
    upstream_api_key: str | None = None
    upstream_timeout_seconds: float = Field(default=10, gt=0)


settings = Settings()
