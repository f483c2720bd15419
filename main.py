from fastapi import FastAPI
from fastapi.responses import JSONResponse

# Internal imports
from config import config
from data.database import create_tables
from models.stats import StatsSettings
from api.experiment_routes import experiment_router
from api.events_routes import events_router, webhooks_router

import contextlib
import logging
import middleware

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: check the statistics settings and make sure the schema exists.
    Shutdown: nothing to release, sessions are per request.
    """
    logger.info("Application starting up with %s", config)
    # An unsupported CONFIDENCE_LEVEL fails here rather than on every stats request
    StatsSettings.from_config(config)

    try:
        create_tables()
        logger.info("Database tables initialized successfully.")
    except Exception:
        logger.exception("Failed to initialize database tables")
        raise

    yield

    logger.info("Application shutting down.")


# --- FastAPI App Initialization ---
app = FastAPI(
    lifespan=lifespan,
    title="Experiment Statistics API",
    version="1.0.0",
    description="Storefront A/B testing: impression, click and conversion ingestion and per-variant statistics."
)

# Add the middleware to the application
app.add_middleware(middleware.RequestIDMiddleware)

app.include_router(experiment_router)
app.include_router(events_router)
app.include_router(webhooks_router)


@app.get("/health")
def health_check():
    return JSONResponse(content={"status": "healthy"}, status_code=200)
