"""
Verification Workflow

A verification is evidence: it records a responder's decision on an incident
without changing the incident's status. The administrative transition into
VERIFIED, UNREACHABLE or FALSE_REPORT requires the latest verification to
agree with it. An administrator may record the decision and apply it in one
transaction.
"""

import uuid
from typing import List

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import IncidentNotVerifiableError, PermissionDeniedError
from app.core.security import IdentityContext, ensure_role
from app.models.database import (
    AuditAction,
    EntityType,
    IncidentStatus,
    IncidentVerification,
    UserRole,
    transaction,
)
from app.models.schemas import VerificationCreate
from app.services.audit import AuditRecorder
from app.services.incidents import IncidentService
from app.services.state_machine import VERIFIABLE_STATUSES

logger = structlog.get_logger(__name__)


class VerificationService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AuditRecorder(session)
        self.incidents = IncidentService(session)

    async def record_verification(
        self,
        identity: IdentityContext,
        incident_id: uuid.UUID,
        payload: VerificationCreate,
    ) -> IncidentVerification:
        """
        Append a verification decision to an incident's history.

        With apply_decision the incident is moved to the decided status in
        the same transaction, so status and evidence never disagree.
        """
        ensure_role(identity, [UserRole.VOLUNTEER, UserRole.ADMIN], "verify incidents")
        if payload.apply_decision and not identity.is_admin:
            raise PermissionDeniedError(
                "Only administrators can apply a verification decision.",
                required_role=[UserRole.ADMIN.value],
            )

        async with transaction(self.session):
            incident = await self.incidents.load(incident_id)
            previous = incident.status
            if previous not in VERIFIABLE_STATUSES:
                raise IncidentNotVerifiableError(incident_id, previous.value)

            verification = IncidentVerification(
                incident_id=incident_id,
                verified_by=identity.user_id,
                decision=payload.decision,
                comment=payload.comment,
            )
            self.session.add(verification)
            await self.session.flush()

            await self.audit.record(
                identity.user_id,
                AuditAction.VERIFY,
                EntityType.INCIDENT,
                incident_id,
                {
                    "verification_id": verification.id,
                    "decision": payload.decision,
                    "incident_status": previous,
                    "applied": payload.apply_decision,
                },
            )

            target = None
            if payload.apply_decision:
                target = IncidentStatus(payload.decision.value)
                await self.incidents.transition(
                    identity,
                    incident,
                    target,
                    {"verification_id": verification.id},
                )

        logger.info(
            "Verification recorded",
            incident_id=str(incident_id),
            decision=payload.decision.value,
            verifier_id=str(identity.user_id),
        )
        if target is not None:
            self.incidents.report_transition(incident_id, previous, target)
        return verification

    async def list_verifications(
        self,
        identity: IdentityContext,
        incident_id: uuid.UUID,
    ) -> List[IncidentVerification]:
        """Verification history, newest first."""
        await self.incidents.get_incident(identity, incident_id)
        result = await self.session.execute(
            select(IncidentVerification)
            .where(IncidentVerification.incident_id == incident_id)
            .order_by(IncidentVerification.created_at.desc())
        )
        return list(result.scalars())
