from datetime import date
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    db_path: str = "rebill.db"
    debug: bool = False
    trigger_port: int = 8080
    allowed_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_origins(cls, v):
        if isinstance(v, str):
            return [x.strip() for x in v.split(",") if x.strip()]
        return v

    run_once: bool = False
    now_override: date | None = None

    projector_concurrency: int = 1
    projector_retries: int = 1
    projector_retry_backoff_seconds: float = 0.5
    projector_timeout_seconds: float = 300

    schedule_enabled: bool = False
    schedule_interval_hours: float = 24


settings = Settings()
