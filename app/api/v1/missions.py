"""
Missions API Endpoints
"""

import uuid
from typing import Any, Dict

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import IdentityContext, get_identity
from app.models.database import Mission, get_db_session
from app.models.schemas import (
    AssignmentCreate,
    AssignmentRead,
    MissionAdvance,
    MissionCreate,
    MissionLogRead,
    MissionRead,
    MissionReportInput,
    MissionReportRead,
    TrackingPoint,
    TrackingRead,
)
from app.services.missions import MissionService

router = APIRouter()


def format_mission(mission: Mission) -> Dict[str, Any]:
    return MissionRead.model_validate(mission).model_dump(mode="json")


@router.post("/", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def create_mission(
    request: MissionCreate,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    service = MissionService(session)
    mission = await service.create_mission(identity, request)
    assignments = await service.list_assignments(mission.id)
    return {
        "success": True,
        "message": "Mission created",
        "mission": format_mission(mission),
        "assignments": [AssignmentRead.model_validate(a).model_dump(mode="json") for a in assignments],
    }


@router.get("/{mission_id}", response_model=Dict[str, Any])
async def get_mission(
    mission_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    service = MissionService(session)
    mission = await service.get_mission(identity, mission_id)
    assignments = await service.list_assignments(mission_id)
    return {
        "success": True,
        "mission": format_mission(mission),
        "assignments": [AssignmentRead.model_validate(a).model_dump(mode="json") for a in assignments],
    }


@router.post("/{mission_id}/assignments", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def add_assignment(
    mission_id: uuid.UUID,
    request: AssignmentCreate,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    assignment = await MissionService(session).add_assignment(identity, mission_id, request)
    return {
        "success": True,
        "assignment": AssignmentRead.model_validate(assignment).model_dump(mode="json"),
    }


@router.post("/{mission_id}/advance", response_model=Dict[str, Any])
async def advance_mission(
    mission_id: uuid.UUID,
    request: MissionAdvance,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    mission = await MissionService(session).advance_mission(
        identity,
        mission_id,
        request.status,
        note=request.note,
        tracking_points=request.tracking_points,
        report=request.report,
    )
    return {
        "success": True,
        "message": f"Mission status updated to {mission.status.value}",
        "mission": format_mission(mission),
    }


@router.get("/{mission_id}/logs", response_model=Dict[str, Any])
async def list_mission_logs(
    mission_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    logs = await MissionService(session).list_mission_logs(identity, mission_id)
    return {
        "success": True,
        "logs": [MissionLogRead.model_validate(entry).model_dump(mode="json") for entry in logs],
    }


@router.post("/{mission_id}/tracking", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def record_tracking(
    mission_id: uuid.UUID,
    request: TrackingPoint,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    tracking = await MissionService(session).record_tracking(
        identity, mission_id, request.latitude, request.longitude, request.recorded_at
    )
    return {
        "success": True,
        "tracking": TrackingRead.model_validate(tracking).model_dump(mode="json"),
    }


@router.get("/{mission_id}/tracking", response_model=Dict[str, Any])
async def list_tracking(
    mission_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    points = await MissionService(session).list_tracking(identity, mission_id)
    return {
        "success": True,
        "tracking": [TrackingRead.model_validate(p).model_dump(mode="json") for p in points],
    }


@router.post("/{mission_id}/report", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def submit_mission_report(
    mission_id: uuid.UUID,
    request: MissionReportInput,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    report = await MissionService(session).submit_mission_report(identity, mission_id, request)
    return {
        "success": True,
        "message": "Mission report filed",
        "report": MissionReportRead.model_validate(report).model_dump(mode="json"),
    }


@router.get("/{mission_id}/report", response_model=Dict[str, Any])
async def get_mission_report(
    mission_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    report = await MissionService(session).get_report(identity, mission_id)
    return {
        "success": True,
        "report": MissionReportRead.model_validate(report).model_dump(mode="json") if report else None,
    }
