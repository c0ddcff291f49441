import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    default_timezone: str = "UTC"
    batch_window_minutes: int = Field(30, ge=0)
    batch_grouping_minutes: int = Field(30, ge=0)
    missed_grace_minutes: int = Field(30, ge=0)
    persist_missed: bool = False
    max_transaction_retries: int = Field(3, ge=1)
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            database_url=env.get("DATABASE_URL"),
            database_name=env.get("DATABASE_NAME"),
            default_timezone=env.get("DEFAULT_TIMEZONE", "UTC"),
            batch_window_minutes=int(env.get("BATCH_WINDOW_MINUTES", 30)),
            batch_grouping_minutes=int(env.get("BATCH_GROUPING_MINUTES", 30)),
            missed_grace_minutes=int(env.get("MISSED_GRACE_MINUTES", 30)),
            persist_missed=_flag(env.get("PERSIST_MISSED")),
            max_transaction_retries=int(env.get("MAX_TRANSACTION_RETRIES", 3)),
            log_level=env.get("LOG_LEVEL", "INFO"),
            port=int(env.get("PORT", 8000)),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
