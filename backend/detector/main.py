"""Main FastAPI application hosting the scan, compaction and retention loops."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .config import Settings
from .database import close_db, create_engine, create_session_factory, init_db
from .routers import status_router
from .services.scheduler import create_scheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    settings = app.state.settings or Settings()
    app.state.settings = settings
    logger.info("Starting Detector")

    engine = create_engine(settings)
    await init_db(engine, settings)
    logger.info("Database initialized")

    app.state.session_factory = create_session_factory(engine)
    if not settings.slack.url:
        logger.warning("No Slack url configured under 'slack.url'; alerts are recorded but not delivered")

    scheduler = create_scheduler(settings, app.state.session_factory)
    scheduler.start()

    yield

    await scheduler.stop()
    await close_db(engine)
    logger.info("Shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Detector",
        description="Synthetic monitoring - DNS, TLS and HTTP probes with issue tracking and alerts",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.include_router(status_router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=Settings().web_port)
