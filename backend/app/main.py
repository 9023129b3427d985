"""SoundSouls - Spotify personality profiles API."""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup: create tables and drop sessions that expired while we were down
    from app.database import Base, engine, get_db_context
    from app.services.session_store import DatabaseSessionStore

    # Import all models so they're registered with Base
    from app import models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    if settings.session_backend == "database":
        with get_db_context() as db:
            removed = DatabaseSessionStore(db).purge_expired()
        logger.info(f"Removed {removed} expired sessions")

    yield


app = FastAPI(
    title=settings.app_name,
    description="Connect Spotify and discover your music personality",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for frontend; cookies require credentials
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-CSRF-Token"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "app": settings.app_name}


# Import and include routers
from app.api import auth  # noqa: E402
from app.api.error_handling import register_exception_handlers  # noqa: E402

register_exception_handlers(app)
app.include_router(auth.router)
