"""
Volunteer Profile API Endpoints
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import IdentityContext, get_identity
from app.models.database import get_db_session
from app.models.schemas import AvailabilityUpdate, VolunteerProfileRead
from app.services.volunteer_profiles import VolunteerProfileService

router = APIRouter()


@router.get("/me", response_model=Dict[str, Any])
async def get_my_profile(
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    profile = await VolunteerProfileService(session).get_profile(identity)
    return {
        "success": True,
        "profile": VolunteerProfileRead.model_validate(profile).model_dump(mode="json"),
    }


@router.patch("/me/availability", response_model=Dict[str, Any])
async def update_availability(
    request: AvailabilityUpdate,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    profile = await VolunteerProfileService(session).update_availability(identity, request)
    return {
        "success": True,
        "message": "Availability updated",
        "profile": VolunteerProfileRead.model_validate(profile).model_dump(mode="json"),
    }
