import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, status
from fitness_outbox.api.v1.outbox import router as outbox_router
from fitness_outbox.consumers.outbox_poller import OutboxProcessor
from fitness_outbox.consumers.registry import HandlerRegistry, load_handler_modules
from fitness_outbox.core.config import (
    API_HOST,
    API_PORT,
    LOG_LEVEL,
    OUTBOX_PROCESSOR_ENABLED,
    PROJECT_NAME,
    VERSION,
    handler_module_paths,
)
from fitness_outbox.core.db import init_db, close_db
from fitness_outbox.core.exception_handlers import setup_exception_handlers
from fitness_outbox.core.log import configure_logging
from fitness_outbox.services.outbox_service import get_outbox_settings

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    configure_logging(LOG_LEVEL)
    log.info(f"Starting {PROJECT_NAME} v{VERSION}...")
    # Invalid OUTBOX_* settings fail here, before anything is served
    settings = get_outbox_settings()
    await init_db()

    processor = None
    if OUTBOX_PROCESSOR_ENABLED:
        registry = load_handler_modules(HandlerRegistry(), handler_module_paths())
        processor = OutboxProcessor(registry, settings)
        await processor.start()
    app.state.outbox_processor = processor

    yield

    if processor is not None:
        await processor.stop()
    await close_db()
    log.info(f"{PROJECT_NAME} stopped.")

app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    # Configure API documentation and paths
    docs_url="/docs",
    redoc_url="/redoc"
)

# Read-only operator endpoints for the outbox
app.include_router(outbox_router, prefix="/api/v1/outbox", tags=["Outbox Operations"])


setup_exception_handlers(app)

@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Simple health check endpoint."""
    processor = getattr(app.state, "outbox_processor", None)
    return {
        "status": "ok",
        "app_name": PROJECT_NAME,
        "outbox_processor": processor.state.value if processor is not None else "disabled",
    }


def run():
    """Serves the operator API with uvicorn (console script fitness-outbox-api)."""
    import uvicorn

    uvicorn.run("fitness_outbox.main:app", host=API_HOST, port=API_PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
