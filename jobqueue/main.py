"""
Job engine API

FastAPI application entry point. Workers run separately (``jobqueue-worker``).
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Import observability modules
from jobqueue.config import settings
from jobqueue.logging_config import configure_logging
from jobqueue.sentry_config import configure_sentry
from jobqueue.middleware.logging import LoggingMiddleware
from jobqueue.routes.metrics import router as metrics_router

# Import route modules
from jobqueue.routes.jobs import router as jobs_router
from jobqueue.routes.notifications import router as notifications_router
from jobqueue.routes.templates import router as templates_router

from jobqueue.collaborators import build_collaborators
from jobqueue.jobs.catalog import build_registry

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.registry = build_registry()
    app.state.collaborators = build_collaborators()
    try:
        yield
    finally:
        await app.state.collaborators.aclose()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Durable background job engine with multi-channel notification dispatch",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

app.include_router(jobs_router)
app.include_router(notifications_router)
app.include_router(templates_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "database": "connected"
    }
