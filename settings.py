"""
Runtime configuration for the Campus Utilities Hub API.

Values come from the environment (or a local .env file). Field names map to the
upper-cased environment variable, e.g. DATABASE_URL.
"""
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: Optional[str] = None
    database_name: str = "campus_hub"

    cloudinary_cloud_name: str = "di1jmmord"
    cloudinary_upload_preset: str = "CampusUtilityHub"
    cloudinary_api_base: str = "https://api.cloudinary.com/v1_1"
    upload_timeout_seconds: float = 30.0

    session_ttl_hours: int = 24 * 7
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = 8000


settings = Settings()
