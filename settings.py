import os
from typing import List, Optional

from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Runtime configuration, read from environment variables."""

    database_url: Optional[str] = None
    database_name: str = "library"
    penalty_rate_per_day: int = Field(5, ge=0)
    max_open_loans: int = Field(3, ge=1)
    default_loan_days: int = Field(14, ge=1)
    lock_timeout_seconds: float = Field(5.0, gt=0)
    log_level: str = "INFO"
    cors_origins: List[str] = ["*"]

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            database_name=os.getenv("DATABASE_NAME", "library"),
            penalty_rate_per_day=int(os.getenv("PENALTY_RATE_PER_DAY", 5)),
            max_open_loans=int(os.getenv("MAX_OPEN_LOANS", 3)),
            default_loan_days=int(os.getenv("DEFAULT_LOAN_DAYS", 14)),
            lock_timeout_seconds=float(os.getenv("LOCK_TIMEOUT_SECONDS", 5.0)),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )
