"""
Incident Service

Creates incidents and owns every change to their status. Two entry points
move an incident: the reporter's early close and the administrator's
transition, which is checked against the adjacency table only. Both write
through compare_and_set_status() and record an audit entry in the same
transaction.
"""

import math
import uuid
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    CategoryInactiveError,
    CategoryNotFoundError,
    IncidentNotFoundError,
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
    VerificationRequiredError,
)
from app.core.metrics import INCIDENT_TRANSITIONS
from app.core.security import IdentityContext, ensure_role
from app.models.database import (
    AuditAction,
    EntityType,
    Incident,
    IncidentCategory,
    IncidentMedia,
    IncidentStatus,
    IncidentVerification,
    UserRole,
    compare_and_set_status,
    transaction,
    utcnow,
)
from app.models.schemas import IncidentCreate
from app.services.audit import AuditRecorder
from app.services.state_machine import REPORTER_CLOSABLE_STATUSES, validate_incident_transition

logger = structlog.get_logger(__name__)

# Statuses an administrator may only enter when a matching verification exists
DECISION_STATUSES = frozenset({
    IncidentStatus.VERIFIED,
    IncidentStatus.UNREACHABLE,
    IncidentStatus.FALSE_REPORT,
})

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def paginate(total: int, page: int, per_page: int) -> Dict[str, int]:
    return {
        "total_records": total,
        "total_pages": math.ceil(total / per_page) if total else 0,
        "current_page": page,
        "per_page": per_page,
    }


def _normalize_paging(page: int, per_page: int) -> Tuple[int, int]:
    if page < 1:
        raise ValidationError("Page must be 1 or greater", field="page")
    if per_page < 1 or per_page > MAX_PAGE_SIZE:
        raise ValidationError(f"per_page must be between 1 and {MAX_PAGE_SIZE}", field="per_page")
    return page, per_page


class IncidentService:
    """Incident creation, reads and status transitions."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AuditRecorder(session)

    # =========================================================================
    # Creation
    # =========================================================================

    async def create_incident(self, identity: IdentityContext, payload: IncidentCreate) -> Incident:
        """
        Report a new incident in REPORTED status.

        Args:
            identity: Reporting civilian
            payload: Title, location, category and optional media references

        Returns:
            The created Incident

        Raises:
            CategoryNotFoundError: Unknown category
            CategoryInactiveError: Category no longer accepts incidents
            ValidationError: Title too short, too many media items, missing note
        """
        ensure_role(identity, [UserRole.CIVILIAN], "report incidents")

        if len(payload.title) < settings.INCIDENT_TITLE_MIN_LENGTH:
            raise ValidationError(
                f"Title must be at least {settings.INCIDENT_TITLE_MIN_LENGTH} characters",
                field="title",
            )
        if len(payload.media) > settings.MAX_MEDIA_PER_INCIDENT:
            raise ValidationError(
                f"At most {settings.MAX_MEDIA_PER_INCIDENT} media items are allowed",
                field="media",
            )

        note = (payload.reporter_note or "").strip()
        if not payload.for_self and not note:
            raise ValidationError(
                "A note is required when reporting on behalf of someone else",
                field="reporter_note",
            )

        description = payload.description
        if not payload.for_self:
            description = f"{description} | {note}" if description else note

        async with transaction(self.session):
            category = await self.session.get(IncidentCategory, payload.category_id)
            if category is None:
                raise CategoryNotFoundError(payload.category_id)
            if not category.is_active:
                raise CategoryInactiveError(payload.category_id)

            incident = Incident(
                title=payload.title,
                description=description,
                category_id=category.id,
                reported_by=identity.user_id,
                latitude=payload.latitude,
                longitude=payload.longitude,
                address_text=payload.address_text,
                landmark=payload.landmark,
                accuracy=payload.accuracy,
                status=IncidentStatus.REPORTED,
            )
            self.session.add(incident)
            await self.session.flush()

            for item in payload.media:
                self.session.add(IncidentMedia(
                    incident_id=incident.id,
                    uploaded_by=identity.user_id,
                    url=item.url,
                    media_type=item.media_type,
                ))

            await self.audit.record(
                identity.user_id,
                AuditAction.CREATE,
                EntityType.INCIDENT,
                incident.id,
                {
                    "category_id": category.id,
                    "for_self": payload.for_self,
                    "media_count": len(payload.media),
                },
            )

        logger.info(
            "Incident reported",
            incident_id=str(incident.id),
            category_id=str(category.id),
            reporter_id=str(identity.user_id),
        )
        return incident

    # =========================================================================
    # Reads
    # =========================================================================

    async def load(self, incident_id: uuid.UUID) -> Incident:
        """Fetch a live (not soft-deleted) incident or raise IncidentNotFoundError."""
        result = await self.session.execute(
            select(Incident).where(Incident.id == incident_id, Incident.deleted_at.is_(None))
        )
        incident = result.scalar_one_or_none()
        if incident is None:
            raise IncidentNotFoundError(incident_id)
        return incident

    async def get_incident(self, identity: IdentityContext, incident_id: uuid.UUID) -> Incident:
        incident = await self.load(incident_id)
        if identity.role == UserRole.CIVILIAN and incident.reported_by != identity.user_id:
            raise PermissionDeniedError(
                "You can only view incidents you reported.",
                resource=f"incident:{incident_id}",
            )
        return incident

    async def list_media(self, incident_id: uuid.UUID) -> List[IncidentMedia]:
        result = await self.session.execute(
            select(IncidentMedia)
            .where(IncidentMedia.incident_id == incident_id)
            .order_by(IncidentMedia.created_at)
        )
        return list(result.scalars())

    async def list_incidents(
        self,
        identity: IdentityContext,
        status: Optional[IncidentStatus] = None,
        category_id: Optional[uuid.UUID] = None,
        page: int = 1,
        per_page: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[Incident], Dict[str, int]]:
        """Paginated incident queue for responders, newest first."""
        ensure_role(identity, [UserRole.ADMIN, UserRole.VOLUNTEER], "list incidents")

        conditions: List[Any] = [Incident.deleted_at.is_(None)]
        if status is not None:
            conditions.append(Incident.status == status)
        if category_id is not None:
            conditions.append(Incident.category_id == category_id)

        return await self._paged(conditions, page, per_page)

    async def list_my_incidents(
        self,
        identity: IdentityContext,
        page: int = 1,
        per_page: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[Incident], Dict[str, int]]:
        conditions = [Incident.deleted_at.is_(None), Incident.reported_by == identity.user_id]
        return await self._paged(conditions, page, per_page)

    async def _paged(self, conditions: List[Any], page: int, per_page: int):
        page, per_page = _normalize_paging(page, per_page)

        total = await self.session.scalar(
            select(func.count()).select_from(Incident).where(*conditions)
        )
        result = await self.session.execute(
            select(Incident)
            .where(*conditions)
            .order_by(Incident.created_at.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return list(result.scalars()), paginate(total or 0, page, per_page)

    # =========================================================================
    # Transitions
    # =========================================================================

    async def close_incident_by_reporter(
        self,
        identity: IdentityContext,
        incident_id: uuid.UUID,
        note: str,
    ) -> Incident:
        """
        Early close by the original reporter.

        Allowed from REPORTED, AWAITING_VERIFICATION and VERIFIED, with a
        mandatory closure note that is kept in the audit trail.
        """
        cleaned = (note or "").strip()

        async with transaction(self.session):
            incident = await self.load(incident_id)
            if incident.reported_by != identity.user_id:
                raise PermissionDeniedError(
                    "Only the original reporter can close this incident.",
                    resource=f"incident:{incident_id}",
                )

            if len(cleaned) < settings.INCIDENT_CLOSE_NOTE_MIN_LENGTH:
                raise ValidationError(
                    f"A closure note of at least {settings.INCIDENT_CLOSE_NOTE_MIN_LENGTH} "
                    "characters is required",
                    field="note",
                )

            previous = incident.status
            if previous not in REPORTER_CLOSABLE_STATUSES:
                logger.warning(
                    "Reporter close rejected",
                    incident_id=str(incident_id),
                    current_status=previous.value,
                )
                raise InvalidTransitionError("incident", previous.value, IncidentStatus.CLOSED.value)

            incident = await compare_and_set_status(
                self.session, Incident, incident_id, previous, IncidentStatus.CLOSED
            )
            await self.audit.record(
                identity.user_id,
                AuditAction.CLOSE,
                EntityType.INCIDENT,
                incident_id,
                {
                    "closedBy": "REPORTER",
                    "note": cleaned,
                    "previous_status": previous,
                },
            )

        self.report_transition(incident_id, previous, IncidentStatus.CLOSED)
        return incident

    async def update_incident_status(
        self,
        identity: IdentityContext,
        incident_id: uuid.UUID,
        new_status: IncidentStatus,
    ) -> Incident:
        """Administrative transition, validated against the adjacency table."""
        ensure_role(identity, [UserRole.ADMIN], "change incident status")

        async with transaction(self.session):
            incident = await self.load(incident_id)
            previous = incident.status
            incident = await self.transition(identity, incident, new_status)

        self.report_transition(incident_id, previous, new_status)
        return incident

    async def transition(
        self,
        identity: IdentityContext,
        incident: Incident,
        target: IncidentStatus,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Incident:
        """
        Move an incident along one edge of the adjacency table.

        Runs inside the caller's transaction. Entering a decision status
        requires the latest verification to carry the same decision.
        """
        current = incident.status
        try:
            validate_incident_transition(current, target)
        except InvalidTransitionError as exc:
            logger.warning(
                "Incident transition rejected",
                incident_id=str(incident.id),
                from_status=current.value,
                to_status=target.value,
                error_code=exc.error_code,
            )
            raise

        if target in DECISION_STATUSES:
            latest = await self.session.scalar(
                select(IncidentVerification.decision)
                .where(IncidentVerification.incident_id == incident.id)
                .order_by(IncidentVerification.created_at.desc())
                .limit(1)
            )
            if latest is None or latest.value != target.value:
                raise VerificationRequiredError(incident.id, target.value)

        updated = await compare_and_set_status(
            self.session, Incident, incident.id, current, target
        )
        await self.audit.record(
            identity.user_id,
            AuditAction.UPDATE_STATUS,
            EntityType.INCIDENT,
            incident.id,
            {"from": current, "to": target, **(metadata or {})},
        )
        return updated

    def report_transition(self, incident_id: uuid.UUID, previous: IncidentStatus, new: IncidentStatus) -> None:
        INCIDENT_TRANSITIONS.labels(from_status=previous.value, to_status=new.value).inc()
        logger.info(
            "Incident status changed",
            incident_id=str(incident_id),
            from_status=previous.value,
            to_status=new.value,
        )

    # =========================================================================
    # Soft delete
    # =========================================================================

    async def soft_delete_incident(self, identity: IdentityContext, incident_id: uuid.UUID) -> Incident:
        ensure_role(identity, [UserRole.ADMIN], "delete incidents")

        async with transaction(self.session):
            incident = await self.load(incident_id)
            incident.deleted_at = utcnow()
            await self.session.flush()
            await self.audit.record(
                identity.user_id,
                AuditAction.DELETE,
                EntityType.INCIDENT,
                incident_id,
                {"status": incident.status},
            )

        logger.info("Incident soft-deleted", incident_id=str(incident_id))
        return incident
