from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()

DEFAULT_DB_PATH = "data/poststrat.duckdb"


@dataclass(frozen=True)
class Settings:
    census_api_key: str
    admin_secret: str
    db_path: str = DEFAULT_DB_PATH
    cors_origins: tuple[str, ...] = ("*",)
    batch_size: int = 5000
    census_timeout: float = 20.0
    census_retries: int = 3


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def get_settings() -> Settings:
    """Read settings from the environment on every call."""
    raw_origins = os.getenv("CORS_ORIGINS", "*")
    origins = tuple(origin.strip() for origin in raw_origins.split(",") if origin.strip())

    return Settings(
        census_api_key=(os.getenv("CENSUS_API_KEY") or "").strip(),
        admin_secret=(os.getenv("ADMIN_SECRET") or "").strip(),
        db_path=(os.getenv("POSTSTRAT_DB_PATH") or DEFAULT_DB_PATH).strip(),
        cors_origins=origins or ("*",),
        batch_size=_env_int("POSTSTRAT_BATCH_SIZE", 5000),
        census_timeout=_env_float("CENSUS_TIMEOUT", 20.0),
        census_retries=_env_int("CENSUS_RETRIES", 3),
    )
