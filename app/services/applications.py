"""
Volunteer Application Workflow

PENDING -> APPROVED | REJECTED (administrator review) or WITHDRAWN (applicant).
All three outcomes are terminal. A user holds at most one PENDING or APPROVED
application across agencies, and only PENDING applications can be edited.
An APPROVED application makes its holder eligible for mission assignments.
"""

import uuid
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AgencyNotFoundError,
    ApplicationAlreadyActiveError,
    ApplicationNotEditableError,
    ApplicationNotFoundError,
    CannotWithdrawError,
    InvalidSkillIdsError,
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from app.core.security import IdentityContext, ensure_role
from app.models.database import (
    Agency,
    ApplicationCertificate,
    ApplicationStatus,
    AuditAction,
    EntityType,
    Skill,
    UserRole,
    VolunteerApplication,
    VolunteerProfile,
    VolunteerSkill,
    compare_and_set_status,
    transaction,
    utcnow,
)
from app.models.schemas import ApplicationReview, ApplicationSubmit, ApplicationUpdate, CertificateInput
from app.services.audit import AuditRecorder
from app.services.state_machine import validate_application_transition

logger = structlog.get_logger(__name__)

ACTIVE_STATUSES = (ApplicationStatus.PENDING, ApplicationStatus.APPROVED)
REVIEW_DECISIONS = (ApplicationStatus.APPROVED, ApplicationStatus.REJECTED)
# Columns a PATCH may clear with an explicit null
NULLABLE_FIELDS = frozenset({"experience"})


def age_on(born: date, today: date) -> int:
    """Full years between born and today."""
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


def _validate_details(
    date_of_birth: Optional[date] = None,
    experience: Optional[str] = None,
    certificates: Optional[List[CertificateInput]] = None,
) -> None:
    if date_of_birth is not None and age_on(date_of_birth, date.today()) < settings.VOLUNTEER_MIN_AGE_YEARS:
        raise ValidationError(
            f"Volunteers must be at least {settings.VOLUNTEER_MIN_AGE_YEARS} years old",
            field="date_of_birth",
        )
    if experience is not None and len(experience) > settings.MAX_EXPERIENCE_LENGTH:
        raise ValidationError(
            f"Experience must be at most {settings.MAX_EXPERIENCE_LENGTH} characters",
            field="experience",
        )
    if certificates is not None and len(certificates) > settings.MAX_CERTIFICATES_PER_APPLICATION:
        raise ValidationError(
            f"At most {settings.MAX_CERTIFICATES_PER_APPLICATION} certificates are allowed",
            field="certificates",
        )


class ApplicationService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AuditRecorder(session)

    # =========================================================================
    # Eligibility
    # =========================================================================

    async def is_approved_volunteer(self, user_id: uuid.UUID) -> bool:
        """True when the user holds an APPROVED application."""
        found = await self.session.scalar(
            select(VolunteerApplication.id)
            .where(
                VolunteerApplication.user_id == user_id,
                VolunteerApplication.status == ApplicationStatus.APPROVED,
            )
            .limit(1)
        )
        return found is not None

    async def is_available(self, user_id: uuid.UUID) -> bool:
        # No profile yet means the volunteer never opted out
        available = await self.session.scalar(
            select(VolunteerProfile.is_available).where(VolunteerProfile.user_id == user_id)
        )
        return available is None or available

    async def is_eligible_responder(self, user_id: uuid.UUID) -> bool:
        """Approved and not marked unavailable."""
        return await self.is_approved_volunteer(user_id) and await self.is_available(user_id)

    # =========================================================================
    # Reads
    # =========================================================================

    async def load(self, application_id: uuid.UUID) -> VolunteerApplication:
        application = await self.session.get(VolunteerApplication, application_id)
        if application is None:
            raise ApplicationNotFoundError(application_id)
        return application

    async def _load_own(self, identity: IdentityContext, application_id: uuid.UUID) -> VolunteerApplication:
        application = await self.load(application_id)
        if application.user_id != identity.user_id:
            raise PermissionDeniedError(
                "You can only manage your own application.",
                resource=f"application:{application_id}",
            )
        return application

    async def get_application(
        self,
        identity: IdentityContext,
        application_id: uuid.UUID,
    ) -> VolunteerApplication:
        if identity.is_admin:
            return await self.load(application_id)
        return await self._load_own(identity, application_id)

    async def list_my_applications(self, identity: IdentityContext) -> List[VolunteerApplication]:
        result = await self.session.execute(
            select(VolunteerApplication)
            .where(VolunteerApplication.user_id == identity.user_id)
            .order_by(VolunteerApplication.submitted_at.desc())
        )
        return list(result.scalars())

    async def list_certificates(self, application_id: uuid.UUID) -> List[ApplicationCertificate]:
        result = await self.session.execute(
            select(ApplicationCertificate)
            .where(ApplicationCertificate.application_id == application_id)
            .order_by(ApplicationCertificate.created_at)
        )
        return list(result.scalars())

    async def _active_application(self, user_id: uuid.UUID) -> Optional[VolunteerApplication]:
        return await self.session.scalar(
            select(VolunteerApplication)
            .where(
                VolunteerApplication.user_id == user_id,
                VolunteerApplication.status.in_(ACTIVE_STATUSES),
            )
            .limit(1)
        )

    async def list_skill_ids(self, user_id: uuid.UUID) -> List[uuid.UUID]:
        result = await self.session.execute(
            select(VolunteerSkill.skill_id).where(VolunteerSkill.volunteer_id == user_id)
        )
        return list(result.scalars())

    # =========================================================================
    # Applicant operations
    # =========================================================================

    async def submit_application(
        self,
        identity: IdentityContext,
        payload: ApplicationSubmit,
    ) -> VolunteerApplication:
        """
        Submit a new PENDING application to an agency.

        Raises:
            AgencyNotFoundError: Unknown or inactive agency
            ApplicationAlreadyActiveError: A PENDING/APPROVED application exists
            InvalidSkillIdsError: Unknown skill ids
            ValidationError: Age, consent, experience or certificate limits
        """
        ensure_role(identity, [UserRole.CIVILIAN], "apply as a volunteer")
        _validate_details(payload.date_of_birth, payload.experience, payload.certificates)
        if not payload.consent_given:
            raise ValidationError("Consent is required to apply", field="consent_given")

        async with transaction(self.session):
            agency = await self.session.get(Agency, payload.agency_id)
            if agency is None or not agency.is_active:
                raise AgencyNotFoundError(payload.agency_id)

            active = await self._active_application(identity.user_id)
            if active is not None:
                active_agency = await self.session.get(Agency, active.agency_id)
                raise ApplicationAlreadyActiveError(active_agency.name, active.id)

            await self._check_skills(payload.skill_ids)

            now = utcnow()
            application = VolunteerApplication(
                user_id=identity.user_id,
                agency_id=agency.id,
                status=ApplicationStatus.PENDING,
                date_of_birth=payload.date_of_birth,
                national_id_number=payload.national_id_number,
                national_id_url=payload.national_id_url,
                address=payload.address,
                has_transport=payload.has_transport,
                experience=payload.experience,
                consent_given=True,
                consent_given_at=now,
                submitted_at=now,
            )
            self.session.add(application)
            try:
                await self.session.flush()
            except IntegrityError as exc:
                # Partial unique index: a concurrent submission won
                logger.warning("Concurrent application rejected", user_id=str(identity.user_id))
                raise ApplicationAlreadyActiveError() from exc

            self._add_certificates(application.id, payload.certificates)
            await self._replace_skills(identity.user_id, payload.skill_ids)

            await self.audit.record(
                identity.user_id,
                AuditAction.SUBMIT,
                EntityType.VOLUNTEER_APPLICATION,
                application.id,
                {
                    "agency_id": agency.id,
                    "skill_count": len(payload.skill_ids),
                    "certificate_count": len(payload.certificates),
                },
            )

        logger.info(
            "Volunteer application submitted",
            application_id=str(application.id),
            agency_id=str(agency.id),
            user_id=str(identity.user_id),
        )
        return application

    async def update_application(
        self,
        identity: IdentityContext,
        application_id: uuid.UUID,
        payload: ApplicationUpdate,
    ) -> VolunteerApplication:
        """Edit a PENDING application. Certificates and skills are replaced wholesale."""
        _validate_details(payload.date_of_birth, payload.experience, payload.certificates)

        async with transaction(self.session):
            application = await self._load_own(identity, application_id)
            if application.status != ApplicationStatus.PENDING:
                raise ApplicationNotEditableError(application.status.value)

            changes: Dict[str, Any] = payload.model_dump(
                exclude_unset=True,
                exclude={"skill_ids", "certificates"},
            )
            changes = {
                key: value for key, value in changes.items()
                if value is not None or key in NULLABLE_FIELDS
            }

            if payload.skill_ids is not None:
                await self._check_skills(payload.skill_ids)

            # Guarded write keeps edits from racing a review
            application = await compare_and_set_status(
                self.session,
                VolunteerApplication,
                application_id,
                ApplicationStatus.PENDING,
                ApplicationStatus.PENDING,
                updated_at=utcnow(),
                **changes,
            )

            if payload.certificates is not None:
                await self.session.execute(
                    delete(ApplicationCertificate)
                    .where(ApplicationCertificate.application_id == application_id)
                )
                self._add_certificates(application_id, payload.certificates)
            if payload.skill_ids is not None:
                await self._replace_skills(identity.user_id, payload.skill_ids)

            updated_fields = sorted(changes)
            if payload.certificates is not None:
                updated_fields.append("certificates")
            if payload.skill_ids is not None:
                updated_fields.append("skill_ids")

            await self.audit.record(
                identity.user_id,
                AuditAction.UPDATE,
                EntityType.VOLUNTEER_APPLICATION,
                application_id,
                {"updated_fields": updated_fields},
            )

        logger.info("Volunteer application updated", application_id=str(application_id))
        return application

    async def withdraw_application(
        self,
        identity: IdentityContext,
        application_id: uuid.UUID,
    ) -> VolunteerApplication:
        async with transaction(self.session):
            application = await self._load_own(identity, application_id)
            if application.status != ApplicationStatus.PENDING:
                raise CannotWithdrawError(application.status.value)

            application = await compare_and_set_status(
                self.session,
                VolunteerApplication,
                application_id,
                ApplicationStatus.PENDING,
                ApplicationStatus.WITHDRAWN,
                withdrawn_at=utcnow(),
            )
            await self.audit.record(
                identity.user_id,
                AuditAction.WITHDRAW,
                EntityType.VOLUNTEER_APPLICATION,
                application_id,
                {"previous_status": ApplicationStatus.PENDING},
            )

        logger.info("Volunteer application withdrawn", application_id=str(application_id))
        return application

    # =========================================================================
    # Review
    # =========================================================================

    async def review_application(
        self,
        identity: IdentityContext,
        application_id: uuid.UUID,
        payload: ApplicationReview,
    ) -> VolunteerApplication:
        ensure_role(identity, [UserRole.ADMIN], "review applications")
        if payload.decision not in REVIEW_DECISIONS:
            raise ValidationError(
                "Review decision must be APPROVED or REJECTED",
                field="decision",
            )

        async with transaction(self.session):
            application = await self.load(application_id)
            previous = application.status
            try:
                validate_application_transition(previous, payload.decision)
            except InvalidTransitionError as exc:
                logger.warning(
                    "Application review rejected",
                    application_id=str(application_id),
                    current_status=previous.value,
                    error_code=exc.error_code,
                )
                raise

            application = await compare_and_set_status(
                self.session,
                VolunteerApplication,
                application_id,
                previous,
                payload.decision,
                reviewed_by=identity.user_id,
                review_note=payload.note,
                reviewed_at=utcnow(),
            )
            await self.audit.record(
                identity.user_id,
                AuditAction.REVIEW,
                EntityType.VOLUNTEER_APPLICATION,
                application_id,
                {"from": previous, "to": payload.decision, "note": payload.note},
            )

        logger.info(
            "Volunteer application reviewed",
            application_id=str(application_id),
            decision=payload.decision.value,
            reviewer_id=str(identity.user_id),
        )
        return application

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _check_skills(self, skill_ids: Iterable[uuid.UUID]) -> None:
        wanted = set(skill_ids)
        if not wanted:
            return
        result = await self.session.execute(select(Skill.id).where(Skill.id.in_(wanted)))
        unknown = wanted - set(result.scalars())
        if unknown:
            raise InvalidSkillIdsError(sorted(unknown, key=str))

    async def _replace_skills(self, user_id: uuid.UUID, skill_ids: Iterable[uuid.UUID]) -> None:
        await self.session.execute(delete(VolunteerSkill).where(VolunteerSkill.volunteer_id == user_id))
        for skill_id in set(skill_ids):
            self.session.add(VolunteerSkill(volunteer_id=user_id, skill_id=skill_id))
        await self.session.flush()

    def _add_certificates(self, application_id: uuid.UUID, certificates: Iterable[CertificateInput]) -> None:
        for cert in certificates:
            self.session.add(ApplicationCertificate(
                application_id=application_id,
                name=cert.name,
                file_url=cert.file_url,
                issued_by=cert.issued_by,
                issued_at=cert.issued_at,
            ))
