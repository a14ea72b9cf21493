import os
from functools import lru_cache
from typing import Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: Optional[str] = Field(None, alias="LEARNER_DATABASE_URL")
    database_pool_size: int = Field(10, alias="LEARNER_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(10, alias="LEARNER_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="LEARNER_DATABASE_ECHO")

    snapshot_retention: int = Field(20, ge=1, alias="LEARNER_SNAPSHOT_RETENTION")
    history_limit: int = Field(10, ge=1, le=100, alias="LEARNER_HISTORY_LIMIT")
    lesson_mastery_window: int = Field(20, ge=1, alias="LEARNER_LESSON_MASTERY_WINDOW")
    write_retry_attempts: int = Field(3, ge=1, le=10, alias="LEARNER_WRITE_RETRY_ATTEMPTS")

    ema_alpha: float = Field(0.1, gt=0.0, le=1.0, alias="LEARNER_EMA_ALPHA")
    ability_rate: float = Field(0.4, gt=0.0, alias="LEARNER_ABILITY_RATE")
    logistic_steepness: float = Field(1.0, gt=0.0, alias="LEARNER_LOGISTIC_STEEPNESS")
    target_success_rate: float = Field(0.75, gt=0.5, lt=1.0, alias="LEARNER_TARGET_SUCCESS_RATE")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[arg-type]
    except ValidationError as exc:
        raise RuntimeError(f"Invalid learner engine configuration: {exc}") from exc
