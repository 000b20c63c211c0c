"""
API Router v1

This module aggregates all API v1 routes and provides the main API router
that gets mounted to the FastAPI application in main.py.
"""

from fastapi import APIRouter

from app.api.v1.applications import router as applications_router
from app.api.v1.incidents import router as incidents_router
from app.api.v1.missions import router as missions_router
from app.api.v1.volunteers import router as volunteers_router
from app.core.config import settings

# =============================================================================
# Main API Router
# =============================================================================

api_router = APIRouter()

# =============================================================================
# Include Sub-Routers
# =============================================================================

api_router.include_router(
    incidents_router,
    prefix="/incidents",
    tags=["incidents"],
    responses={
        404: {"description": "Incident not found"},
        409: {"description": "Concurrent modification"},
        422: {"description": "Validation error"},
    },
)

api_router.include_router(
    missions_router,
    prefix="/missions",
    tags=["missions"],
    responses={
        404: {"description": "Mission not found"},
        409: {"description": "Concurrent modification"},
        412: {"description": "Precondition failed"},
    },
)

api_router.include_router(
    applications_router,
    prefix="/applications",
    tags=["applications"],
    responses={
        404: {"description": "Application not found"},
        422: {"description": "Validation error"},
    },
)

api_router.include_router(
    volunteers_router,
    prefix="/volunteers",
    tags=["volunteers"],
    responses={
        403: {"description": "Not an approved volunteer"},
        404: {"description": "Volunteer profile not found"},
    },
)


@api_router.get("/health", tags=["system"])
async def api_health():
    """API health check endpoint."""
    return {
        "status": "healthy",
        "api_version": "v1",
        "service": settings.APP_NAME,
    }


@api_router.get("/info", tags=["system"])
async def api_info():
    """API information endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "description": settings.APP_DESCRIPTION,
        "api_version": "v1",
        "environment": settings.ENVIRONMENT,
        "docs_url": "/docs" if settings.SHOW_DOCS else None,
    }
