import logging
from logging import INFO
from typing import Optional

from tortoise import Tortoise

from fitness_outbox.core.config import DB_URL

log = logging.getLogger(__name__)

# Set logging level for Tortoise ORM
logging.getLogger('tortoise').setLevel(INFO)

# Define all models modules for the ORM
MODELS_MODULES = [
    "fitness_outbox.models.outbox",
    "fitness_outbox.models.processed_event",
]


async def init_db(db_url: Optional[str] = None, extra_modules: Optional[list] = None, generate_schemas: bool = True):
    """Initializes the Tortoise ORM connection and (optionally) generates schemas."""
    db_url = db_url or DB_URL
    try:
        await Tortoise.init(
            db_url=db_url,
            modules={"models": MODELS_MODULES + list(extra_modules or [])},
            use_tz=True,
            timezone="UTC",
        )
        if generate_schemas:
            # Create tables that do not exist yet
            await Tortoise.generate_schemas(safe=True)
        log.info("Database connection established.")
    except Exception:
        log.exception("Could not connect to database.")
        # Re-raise to prevent the service from starting without a database
        raise


async def close_db():
    """Closes all database connections."""
    await Tortoise.close_connections()
    log.info("Database connections closed.")
