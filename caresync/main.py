"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from caresync.api.routes import router
from caresync.services import build_services
from caresync.settings import load_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup/shutdown events.

    Startup:
    - Load settings and configure logging
    - Wire services (PostgreSQL or in-memory record store)
    - Create the records table and restore the last session

    Shutdown:
    - Stop the midnight rollover task
    - Close database connection pool
    """
    # Startup
    logger.info("Starting CareSync service...")

    try:
        settings = load_settings()
        logging.getLogger().setLevel(settings.log_level.upper())
        logger.info("Settings loaded successfully")

        services = build_services(settings)
        await services.start()
        app.state.services = services

        logger.info("CareSync service started successfully")

    except Exception as e:
        logger.error(f"Failed to start service: {e}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down CareSync service...")
    await services.close()
    logger.info("Service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="CareSync API",
    description="Caregiver-patient session consistency, geofencing and reminder scheduling",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# CORS middleware (configure as needed for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "CareSync API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "caresync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
