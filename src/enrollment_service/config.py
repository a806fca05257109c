"""
Enrollment service settings.

Values come from constructor arguments, ENROLLMENT_* environment variables
and an optional .env file, in that order of precedence.
"""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MINIMUM_KEY_LENGTH = 2048


class EnrollmentSettings(BaseSettings):
    pending_ttl_seconds: int = Field(default=24 * 60 * 60, gt=0)
    sweep_interval_seconds: float = Field(default=300.0, gt=0)
    worker_count: int = Field(default=4, ge=1)
    operation_timeout_seconds: float = Field(default=30.0, gt=0)
    default_key_length: int = MINIMUM_KEY_LENGTH
    maximum_key_length: int = 16384
    storage_path: Path = Path.home() / ".enrollment" / "store"
    templates_file: Optional[Path] = None
    store_key_passphrase: Optional[str] = None
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="ENROLLMENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("default_key_length", "maximum_key_length")
    @classmethod
    def check_key_length_floor(cls, value: int) -> int:
        """Configured lengths can never undercut the global minimum."""
        if value < MINIMUM_KEY_LENGTH:
            raise ValueError(f"key length must be at least {MINIMUM_KEY_LENGTH} bits")
        return value
