"""
Incidents API Endpoints

Thin adapter over IncidentService and VerificationService. Engine errors
propagate to the application-level exception handler.
"""

import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import IdentityContext, get_identity
from app.models.database import Incident, IncidentStatus, get_db_session
from app.models.schemas import (
    IncidentClose,
    IncidentCreate,
    IncidentRead,
    IncidentStatusUpdate,
    MediaRead,
    VerificationCreate,
    VerificationRead,
)
from app.services.incidents import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, IncidentService
from app.services.verification import VerificationService

router = APIRouter()


def format_incident(incident: Incident) -> Dict[str, Any]:
    return IncidentRead.model_validate(incident).model_dump(mode="json")


@router.post("/", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def create_incident(
    request: IncidentCreate,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    """Report a new incident."""
    service = IncidentService(session)
    incident = await service.create_incident(identity, request)
    media = await service.list_media(incident.id)
    return {
        "success": True,
        "message": "Incident reported successfully",
        "incident": format_incident(incident),
        "media": [MediaRead.model_validate(m).model_dump(mode="json") for m in media],
    }


@router.get("/", response_model=Dict[str, Any])
async def list_incidents(
    status_filter: Optional[IncidentStatus] = Query(None, alias="status"),
    category_id: Optional[uuid.UUID] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    incidents, pagination = await IncidentService(session).list_incidents(
        identity, status=status_filter, category_id=category_id, page=page, per_page=per_page
    )
    return {
        "success": True,
        "incidents": [format_incident(i) for i in incidents],
        "pagination": pagination,
    }


@router.get("/mine", response_model=Dict[str, Any])
async def list_my_incidents(
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    incidents, pagination = await IncidentService(session).list_my_incidents(
        identity, page=page, per_page=per_page
    )
    return {
        "success": True,
        "incidents": [format_incident(i) for i in incidents],
        "pagination": pagination,
    }


@router.get("/{incident_id}", response_model=Dict[str, Any])
async def get_incident(
    incident_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    service = IncidentService(session)
    incident = await service.get_incident(identity, incident_id)
    media = await service.list_media(incident_id)
    return {
        "success": True,
        "incident": format_incident(incident),
        "media": [MediaRead.model_validate(m).model_dump(mode="json") for m in media],
    }


@router.post("/{incident_id}/close", response_model=Dict[str, Any])
async def close_incident(
    incident_id: uuid.UUID,
    request: IncidentClose,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    """Reporter-initiated close with a mandatory note."""
    incident = await IncidentService(session).close_incident_by_reporter(
        identity, incident_id, request.note
    )
    return {
        "success": True,
        "message": "Incident closed",
        "incident": format_incident(incident),
    }


@router.post("/{incident_id}/status", response_model=Dict[str, Any])
async def update_incident_status(
    incident_id: uuid.UUID,
    request: IncidentStatusUpdate,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    incident = await IncidentService(session).update_incident_status(
        identity, incident_id, request.status
    )
    return {
        "success": True,
        "message": f"Incident status updated to {incident.status.value}",
        "incident": format_incident(incident),
    }


@router.delete("/{incident_id}", response_model=Dict[str, Any])
async def delete_incident(
    incident_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    await IncidentService(session).soft_delete_incident(identity, incident_id)
    return {"success": True, "message": "Incident deleted"}


# =============================================================================
# Verifications
# =============================================================================

@router.post(
    "/{incident_id}/verifications",
    response_model=Dict[str, Any],
    status_code=status.HTTP_201_CREATED,
)
async def record_verification(
    incident_id: uuid.UUID,
    request: VerificationCreate,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    verification = await VerificationService(session).record_verification(
        identity, incident_id, request
    )
    return {
        "success": True,
        "verification": VerificationRead.model_validate(verification).model_dump(mode="json"),
    }


@router.get("/{incident_id}/verifications", response_model=Dict[str, Any])
async def list_verifications(
    incident_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    verifications = await VerificationService(session).list_verifications(identity, incident_id)
    return {
        "success": True,
        "verifications": [
            VerificationRead.model_validate(v).model_dump(mode="json") for v in verifications
        ],
    }
