from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


TRAVEL_PROFILES = ("car", "moto", "walk", "truck")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_env: str = Field(default="dev", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    redis_url: str = Field(default="redis://redis:6379/0", alias="REDIS_URL")
    allowed_origins: str = Field(default="http://localhost:5173", alias="ALLOWED_ORIGINS")

    trackasia_base_url: str = Field(default="https://maps.track-asia.com", alias="TRACKASIA_BASE_URL")
    trackasia_api_key: str | None = Field(default=None, alias="TRACKASIA_API_KEY")
    trackasia_timeout_seconds: int = Field(default=20, ge=1, alias="TRACKASIA_TIMEOUT_SECONDS")
    trackasia_max_attempts: int = Field(default=3, ge=1, le=10, alias="TRACKASIA_MAX_ATTEMPTS")
    trackasia_fallback_speed: float | None = Field(default=None, gt=0, alias="TRACKASIA_FALLBACK_SPEED")

    distance_default_profile: str = Field(default="car", alias="DISTANCE_DEFAULT_PROFILE")
    distance_cache_ttl_seconds: int = Field(default=600, ge=0, alias="DISTANCE_CACHE_TTL_SECONDS")
    matrix_max_coordinates: int = Field(default=100, ge=2, alias="MATRIX_MAX_COORDINATES")

    @field_validator("trackasia_api_key", mode="before")
    @classmethod
    def _normalize_optional_secret(cls, value: object) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("trackasia_fallback_speed", mode="before")
    @classmethod
    def _normalize_optional_number(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("trackasia_base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value: object) -> str:
        return str(value or "").strip().rstrip("/")

    @field_validator("distance_default_profile", mode="before")
    @classmethod
    def _normalize_profile(cls, value: object) -> str:
        profile = str(value or "car").strip().lower()
        if profile not in TRAVEL_PROFILES:
            raise ValueError(f"DISTANCE_DEFAULT_PROFILE must be one of {', '.join(TRAVEL_PROFILES)}")
        return profile

    @property
    def cors_origins(self) -> list[str]:
        return [item.strip() for item in self.allowed_origins.split(",") if item.strip()]

    @property
    def is_production_mode(self) -> bool:
        return str(self.app_env or "").strip().lower() in {"prod", "production"}

    @property
    def trackasia_mock_mode(self) -> bool:
        return self.trackasia_api_key is None and not self.is_production_mode

    @model_validator(mode="after")
    def _validate_required_production_settings(self) -> "Settings":
        if not self.trackasia_base_url:
            raise ValueError("TRACKASIA_BASE_URL must not be empty.")

        if not self.is_production_mode:
            return self

        if not self.trackasia_api_key:
            raise ValueError("Missing required production settings: TRACKASIA_API_KEY")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
