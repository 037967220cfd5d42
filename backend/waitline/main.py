"""
Waitline API - Main FastAPI application.

Virtual waiting lines: hosts open a queue and share its code, customers
join with the code, hosts call the next person.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from waitline.config import get_settings
from waitline.database import build_engine, build_session_maker, init_db
from waitline.services.address_lookup import AddressLookup
from waitline.services.change_feed import ChangeFeed
from waitline.services.queue_store import QueueStore
from waitline.services.session_registry import SessionRegistry

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.
    Runs on startup and shutdown.
    """
    # Startup
    logger.info("Starting %s in %s mode...", settings.app_name, settings.app_env)
    engine = build_engine(settings.async_database_url, echo=settings.debug)
    await init_db(engine, enforce_waiting_uniqueness=settings.enforce_waiting_uniqueness)
    logger.info("Database initialized.")

    # Change events only cover writes made through this process: run one
    # worker and keep other writers off the queue tables
    store = QueueStore(build_session_maker(engine), ChangeFeed())
    app.state.registry = SessionRegistry(store, settings)
    app.state.address_lookup = AddressLookup(settings)
    sweep_task = asyncio.create_task(app.state.registry.run_eviction())

    yield

    # Shutdown
    logger.info("Shutting down...")
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass
    await app.state.registry.close_all()
    await store.feed.drain()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Virtual queues: join by code, get called when it's your turn",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# CORS middleware - allow frontend apps to connect
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",  # Local web dev
        "http://localhost:8081",  # Expo web
        "http://localhost:19006",  # Expo web alt
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    """Root endpoint - basic health check."""
    return {
        "app": settings.app_name,
        "version": "0.1.0",
        "status": "running",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {"status": "healthy"}


# Routers
from waitline.routers import auth, locations, queues  # noqa: E402

app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
app.include_router(queues.router, prefix="/api/queues", tags=["Queues"])
app.include_router(locations.router, prefix="/api/locations", tags=["Locations"])
