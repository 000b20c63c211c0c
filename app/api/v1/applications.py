"""
Volunteer Applications API Endpoints
"""

import uuid
from typing import Any, Dict

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import IdentityContext, get_identity
from app.models.database import VolunteerApplication, get_db_session
from app.models.schemas import (
    ApplicationRead,
    ApplicationReview,
    ApplicationSubmit,
    ApplicationUpdate,
    CertificateRead,
)
from app.services.applications import ApplicationService

router = APIRouter()


async def format_application(service: ApplicationService, application: VolunteerApplication) -> Dict[str, Any]:
    data = ApplicationRead.model_validate(application).model_dump(mode="json")
    certificates = await service.list_certificates(application.id)
    data["certificates"] = [CertificateRead.model_validate(c).model_dump(mode="json") for c in certificates]
    data["skill_ids"] = [str(s) for s in await service.list_skill_ids(application.user_id)]
    return data


@router.post("/", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def submit_application(
    request: ApplicationSubmit,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    service = ApplicationService(session)
    application = await service.submit_application(identity, request)
    return {
        "success": True,
        "message": "Application submitted",
        "application": await format_application(service, application),
    }


@router.get("/mine", response_model=Dict[str, Any])
async def list_my_applications(
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    applications = await ApplicationService(session).list_my_applications(identity)
    return {
        "success": True,
        "applications": [ApplicationRead.model_validate(a).model_dump(mode="json") for a in applications],
    }


@router.get("/{application_id}", response_model=Dict[str, Any])
async def get_application(
    application_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    service = ApplicationService(session)
    application = await service.get_application(identity, application_id)
    return {"success": True, "application": await format_application(service, application)}


@router.patch("/{application_id}", response_model=Dict[str, Any])
async def update_application(
    application_id: uuid.UUID,
    request: ApplicationUpdate,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    service = ApplicationService(session)
    application = await service.update_application(identity, application_id, request)
    return {
        "success": True,
        "message": "Application updated",
        "application": await format_application(service, application),
    }


@router.post("/{application_id}/withdraw", response_model=Dict[str, Any])
async def withdraw_application(
    application_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    application = await ApplicationService(session).withdraw_application(identity, application_id)
    return {
        "success": True,
        "message": "Application withdrawn",
        "application": ApplicationRead.model_validate(application).model_dump(mode="json"),
    }


@router.post("/{application_id}/review", response_model=Dict[str, Any])
async def review_application(
    application_id: uuid.UUID,
    request: ApplicationReview,
    session: AsyncSession = Depends(get_db_session),
    identity: IdentityContext = Depends(get_identity),
) -> Dict[str, Any]:
    application = await ApplicationService(session).review_application(identity, application_id, request)
    return {
        "success": True,
        "message": f"Application {application.status.value.lower()}",
        "application": ApplicationRead.model_validate(application).model_dump(mode="json"),
    }
