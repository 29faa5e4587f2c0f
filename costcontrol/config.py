# costcontrol/config.py
from functools import lru_cache
from pathlib import Path
from typing import List, Literal

from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

ConsistencyMode = Literal["advisory", "optimistic", "serialized"]
RecalculationMode = Literal["background", "inline"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # --- Database ---
    database_url: str = "sqlite:///costcontrol/costcontrol_dev.db"

    # --- Security / JWT ---
    jwt_secret: str = "dev-secret-please-change"
    jwt_algorithm: str = "HS256"

    # --- CORS ---
    cors_origins: List[AnyHttpUrl] = ["http://localhost:3000"]  # type: ignore[assignment]

    # --- Logging ---
    log_level: str = "INFO"
    json_logs: bool = False

    # --- Financial consistency ---
    # advisory reproduces the unserialized validate-then-commit behaviour.
    commitment_consistency_mode: ConsistencyMode = "advisory"
    contingency_warning_threshold: int = 80

    # --- Recalculation queue ---
    recalculation_mode: RecalculationMode = "background"
    recalculation_workers: int = 2
    recalculation_queue_size: int = 1000
    recalculation_max_retries: int = 3
    recalculation_backoff_seconds: float = 0.5


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

# Ensure path directory exists (for SQLite)
if settings.database_url.startswith("sqlite:///"):
    db_path = Path(settings.database_url.replace("sqlite:///", ""))
    db_path.parent.mkdir(parents=True, exist_ok=True)

# --- SQLAlchemy setup ---
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False}
    if settings.database_url.startswith("sqlite")
    else {},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()
