"""
Volunteer Availability

Approved volunteers toggle whether they take new mission assignments and may
share their last known position with the switch. A missing profile counts as
available.
"""

import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotAnApprovedVolunteerError, VolunteerProfileNotFoundError
from app.core.security import IdentityContext, ensure_role
from app.models.database import AuditAction, EntityType, UserRole, VolunteerProfile, transaction
from app.models.schemas import AvailabilityUpdate
from app.services.applications import ApplicationService
from app.services.audit import AuditRecorder

logger = structlog.get_logger(__name__)


class VolunteerProfileService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AuditRecorder(session)
        self.applications = ApplicationService(session)

    async def get_profile(self, identity: IdentityContext) -> VolunteerProfile:
        ensure_role(identity, [UserRole.VOLUNTEER], "view a volunteer profile")
        profile = await self.session.get(VolunteerProfile, identity.user_id)
        if profile is None:
            raise VolunteerProfileNotFoundError(identity.user_id)
        return profile

    async def update_availability(
        self,
        identity: IdentityContext,
        payload: AvailabilityUpdate,
    ) -> VolunteerProfile:
        """
        Set the caller's availability, creating the profile on first use.

        Raises:
            PermissionDeniedError: Caller is not a volunteer
            NotAnApprovedVolunteerError: Caller holds no APPROVED application
        """
        ensure_role(identity, [UserRole.VOLUNTEER], "update availability")

        async with transaction(self.session):
            if not await self.applications.is_approved_volunteer(identity.user_id):
                raise NotAnApprovedVolunteerError(identity.user_id)

            profile = await self.session.get(VolunteerProfile, identity.user_id)
            if profile is None:
                profile = VolunteerProfile(user_id=identity.user_id)
                self.session.add(profile)

            profile.is_available = payload.is_available
            if payload.latitude is not None:
                profile.last_known_latitude = payload.latitude
                profile.last_known_longitude = payload.longitude
            await self.session.flush()

            await self.audit.record(
                identity.user_id,
                AuditAction.UPDATE,
                EntityType.VOLUNTEER_PROFILE,
                identity.user_id,
                {"is_available": payload.is_available, "with_location": payload.latitude is not None},
            )

        logger.info(
            "Volunteer availability updated",
            user_id=str(identity.user_id),
            is_available=payload.is_available,
        )
        return profile
