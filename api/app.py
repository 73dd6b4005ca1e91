"""
FastAPI Application Entry Point

This module creates and configures the FastAPI application for the
face enrollment and matching service.

The application provides:
- REST endpoints for enrollment, fed one detection at a time
- REST endpoints for 1:N identification
- REST endpoints for user management and gallery import/export
- Health check endpoint

Usage:
    # From project root:
    uvicorn api.app:app --host 0.0.0.0 --port 8000 --reload

    # Or run directly:
    python -m api.app
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.deps import (
    get_enrollment_session,
    get_match_index,
    get_store,
    reset_state,
)
from api.routes import enrollment_router, identification_router, management_router
from api.schemas import HealthResponse
from faceid.config import get_logging_config, get_server_config
from faceid.enrollment import EnrollmentSession
from faceid.matching import MatchIndex
from faceid.template_store import TemplateStore


# Configure logging
logging.basicConfig(
    level=get_logging_config().get("level", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Runs on startup:
    - Open the template store
    - Build the match index from stored templates
    - Create the enrollment session (resuming any saved checkpoint)

    Runs on shutdown:
    - Drop cached state and close the store
    """
    logger.info("=" * 60)
    logger.info("Starting face enrollment and matching API")
    logger.info("=" * 60)

    store = get_store()
    stats = store.get_stats()
    logger.info(f"Template store ready: {stats['total_users']} users enrolled")

    match_index = get_match_index(store)
    logger.info(f"Match index ready: {match_index.user_count} users, "
                f"{match_index.descriptor_count} descriptors")

    session = get_enrollment_session(store)
    logger.info(f"Enrollment session ready: state={session.state.value}, "
                f"captures={session.capture_count}")

    logger.info("API startup complete!")
    logger.info("=" * 60)

    yield

    # Cleanup on shutdown
    logger.info("Shutting down API...")
    reset_state()
    store.close()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Face Enrollment and Matching API",
    description="""
API for enrolling faces from detector output and identifying them 1:N.

## Features
- **Enrollment**: Start a session, then POST one detection per frame to
  `/enrollment/detection`. Each response says whether the embedding was
  captured and, if not, why (`too_fast`, `low_confidence`, `too_similar`, ...).
- **Identification**: POST an embedding to `/identify`
- **User Management**: List, view, delete, export and import enrolled users
    """,
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS for frontend access
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(enrollment_router)
app.include_router(identification_router)
app.include_router(management_router)


# ============================================================
# Health Check Endpoint
# ============================================================

@app.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check(
    store: TemplateStore = Depends(get_store),
    match_index: MatchIndex = Depends(get_match_index),
    session: EnrollmentSession = Depends(get_enrollment_session),
):
    """
    Check the health of the API and its dependencies.

    Returns:
    - Number of enrolled users in storage
    - Number of users in the match index
    - Enrollment session state
    """
    stats = store.get_stats()

    # Index out of sync with storage means a reload is pending
    status = "healthy" if match_index.user_count == stats["total_users"] else "degraded"

    return HealthResponse(
        status=status,
        enrolled_users=stats["total_users"],
        indexed_users=match_index.user_count,
        enrollment_state=session.state.value,
    )


@app.get("/", tags=["system"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Face Enrollment and Matching API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    server = get_server_config()

    logger.info(f"Starting server on {server['host']}:{server['port']}")
    uvicorn.run(
        "api.app:app",
        host=server["host"],
        port=server["port"],
        reload=True,
        log_level="info",
    )
