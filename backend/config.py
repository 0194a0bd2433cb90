from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

_BACKEND_DIR = Path(__file__).parent.resolve()
_PROJECT_ROOT = _BACKEND_DIR.parent
_DEFAULT_DB_PATH = _PROJECT_ROOT / "data" / "cost_basis.db"
_SQLITE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")


def normalize_database_url(url: str) -> str:
    """Pin relative SQLite paths to the project root.

    Workers ``chdir`` into ``backend/``; without this a relative path would
    point the API and the workers at different database files.
    """
    text = str(url).strip().strip("\"'")
    prefix = next((p for p in _SQLITE_PREFIXES if text.startswith(p)), None)
    if prefix is None:
        return text

    db_path = text[len(prefix) :]
    if not db_path:
        return text
    if db_path.lstrip("/") == ":memory:":
        return prefix + ":memory:"

    path = Path(db_path)
    if not path.is_absolute():
        path = _PROJECT_ROOT / path
    return f"{prefix}{path.resolve()}"


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: str | None = None

    # Cost basis batching
    COST_BASIS_BATCH_SIZE: int = 10  # Wallets computed concurrently per group
    COST_BASIS_BATCH_DELAY_SECONDS: float = 0.1  # Pause between groups
    COST_BASIS_CACHE_TTL_SECONDS: int = 3600  # Cached result lifetime

    # Price resolution
    PRICE_FALLBACK_WINDOW_SECONDS: int = 86400  # +/- search window around the hour
    FLOOR_PRICE_USD: float = 1e-9  # Sentinel, never a real market price

    # Worker
    COST_BASIS_WORKER_POLL_SECONDS: float = 30.0
    CACHE_CLEANUP_INTERVAL_SECONDS: int = 3600
    COST_BASIS_RECALC_ALL_ON_START: bool = False

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        if value is None:
            return value
        return normalize_database_url(value)

    @field_validator("COST_BASIS_BATCH_SIZE")
    @classmethod
    def _validate_batch_size(cls, value: int) -> int:
        if value < 1:
            raise ValueError("COST_BASIS_BATCH_SIZE must be at least 1")
        return value

    @field_validator(
        "COST_BASIS_BATCH_DELAY_SECONDS",
        "COST_BASIS_WORKER_POLL_SECONDS",
    )
    @classmethod
    def _validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("delay must be non-negative")
        return value

    @field_validator("FLOOR_PRICE_USD")
    @classmethod
    def _validate_floor_price(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("FLOOR_PRICE_USD must be positive")
        return value

    class Config:
        # backend/.env wins over the project-root .env
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
