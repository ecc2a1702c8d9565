from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Any, List, Optional
import json


def parse_cors_origins(v: Any) -> List[str]:
    """Parse CORS origins from string or list"""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        if v.startswith('['):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        return [origin.strip() for origin in v.split(',') if origin.strip()]
    return []


class Settings(BaseSettings):
    """Application settings - all configurable via environment variables"""

    # Application
    APP_NAME: str = "Study Tracker API"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    PORT: int = 8000

    # Database (MongoDB)
    DATABASE_URL: Optional[str] = None
    DATABASE_NAME: Optional[str] = None
    QUERY_CACHE_ENABLED: bool = True

    # CORS
    CORS_ORIGINS: Any = ["*"]

    # Auth
    ADMIN_INVITE_CODE: Optional[str] = None
    SESSION_TTL_HOURS: int = 72
    BCRYPT_ROUNDS: int = 12

    # File storage
    STORAGE_DIR: str = "uploads"
    STORAGE_BUCKET: str = "resources"
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    # Timed tests
    AUTO_SUBMIT_ENABLED: bool = True
    COUNTDOWN_TICK_SECONDS: float = 1.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _split_origins(cls, v):
        return parse_cors_origins(v)

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def database_configured(self) -> bool:
        return bool(self.DATABASE_URL and self.DATABASE_NAME)


settings = Settings()
