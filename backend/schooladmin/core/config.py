from functools import lru_cache
from typing import Literal, Optional
from urllib.parse import urlparse

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "School Admin API"
    ENV: Literal["development", "production", "test"] = "development"
    ALLOW_DEBUG: bool = False
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://school_admin:change_me@db:5432/school_admin"
    DATABASE_URL_SYNC: Optional[str] = None
    DATABASE_ECHO: bool = False

    # Security
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours

    # Frontend origin, used for CSRF origin checks and CORS
    FRONTEND_URL: str = "http://localhost:5173"
    CORS_ORIGINS: str = ""

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, value: str) -> str:
        if len(value) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return value

    @field_validator("FRONTEND_URL")
    @classmethod
    def validate_frontend_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("FRONTEND_URL must be a valid http(s) URL")
        return value

    @property
    def debug_exposed(self) -> bool:
        """Stack traces are only exposed in development with explicit opt-in."""
        return self.ENV == "development" and self.ALLOW_DEBUG

    @property
    def allowed_origin(self) -> str:
        parsed = urlparse(self.FRONTEND_URL)
        return f"{parsed.scheme}://{parsed.netloc}"

    @property
    def cors_origins_list(self) -> list[str]:
        origins = [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]
        return origins or [self.allowed_origin]

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
