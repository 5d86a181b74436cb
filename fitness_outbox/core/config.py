import os
from typing import Dict, List, Mapping, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from fitness_outbox.core.errors import ConfigurationError

# Database Configuration
# SQLite works for local runs; production points this at Postgres (asyncpg)
DB_URL = os.getenv("DATABASE_URL", "postgres://user:password@db:5432/fitness_db")

# Application Metadata
PROJECT_NAME = os.getenv("PROJECT_NAME", "Fitness Tracker Outbox")
VERSION = "1.0.0"
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Run the processor inside the API process (otherwise use the standalone poller)
OUTBOX_PROCESSOR_ENABLED = os.getenv("OUTBOX_PROCESSOR_ENABLED", "false").lower() in ("1", "true", "yes")

# Comma separated module paths, each exposing register(registry)
OUTBOX_HANDLER_MODULES = os.getenv("OUTBOX_HANDLER_MODULES", "")

# OutboxProcessorSettings fields are read from OUTBOX_<FIELD_NAME>
OUTBOX_ENV_PREFIX = "OUTBOX_"


class OutboxProcessorSettings(BaseSettings):
    """
    Knobs for the outbox processor. Every value must be a positive integer;
    anything else is rejected when the settings object is built.

    Environment variables use the OUTBOX_ prefix.
    Example: OUTBOX_INTERVAL_SECONDS=5
             OUTBOX_BATCH_SIZE=100
    """

    interval_seconds: int = Field(default=10, gt=0, description="Poll cadence between cycles.")
    max_retry_attempts: int = Field(default=3, gt=0, description="Failed attempts before a message is quarantined.")
    batch_size: int = Field(default=50, gt=0, description="Upper bound of messages claimed per cycle.")
    lease_seconds: int = Field(default=300, gt=0, description="How long a claim stays exclusive before it can be reclaimed.")
    dispatch_concurrency: int = Field(default=1, gt=0, description="Messages of one batch delivered at the same time.")

    model_config = SettingsConfigDict(
        env_prefix=OUTBOX_ENV_PREFIX,
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    def __init__(self, **values):
        try:
            super().__init__(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid outbox processor settings: {e}") from e

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "OutboxProcessorSettings":
        """
        Builds settings from the process environment, or from `environ` when given.
        Blank variables keep their defaults.
        """
        if environ is None:
            return cls()
        overrides: Dict[str, str] = {}
        for field_name in cls.model_fields:
            raw = environ.get(f"{OUTBOX_ENV_PREFIX}{field_name.upper()}")
            if raw is not None and raw.strip() != "":
                overrides[field_name] = raw.strip()
        return cls(**overrides)


def handler_module_paths(raw: Optional[str] = None) -> List[str]:
    raw = OUTBOX_HANDLER_MODULES if raw is None else raw
    return [path.strip() for path in raw.split(",") if path.strip()]
