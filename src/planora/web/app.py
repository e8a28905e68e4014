"""
Planora Web - FastAPI application.

Backend for the travel preference onboarding flow. Supabase Auth issues
the tokens; the browser sends them as Bearer + X-Refresh-Token headers.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from onboarding.api import router as onboarding_router
from onboarding.completion import get_completion_service, reset_completion_service
from planora import __version__
from planora.config import configure_logging, settings
from planora.observability.commit_logger import close_commit_logger, init_commit_logger

logger = logging.getLogger(__name__)

app = FastAPI(title="Planora", version=__version__)


@app.on_event("startup")
async def startup_event():
    """Configure logging and log configuration on startup."""
    configure_logging()
    logger.info("Planora starting up...")
    logger.info(f"  Environment: {settings.planora_env}")
    if settings.planora_log_commits:
        trace = init_commit_logger()
        logger.info(f"  Commit trace logging: {trace.log_path}")


@app.on_event("shutdown")
async def shutdown_event():
    """Let in-flight onboarding commits finish before the process exits."""
    await get_completion_service().close()
    reset_completion_service()
    path = close_commit_logger()
    if path:
        logger.info(f"Commit trace written to {path}")


# CORS middleware for the Vite dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(onboarding_router, prefix="/api")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}
