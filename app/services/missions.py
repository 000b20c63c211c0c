"""
Mission Dispatch Engine

Creates missions for VERIFIED incidents, assigns responders and drives the
strictly linear mission lifecycle:

    ASSIGNED -> ACCEPTED -> EN_ROUTE -> ON_SITE -> COMPLETED

Every accepted transition appends a MissionLog entry named after the new
status. Tracking points are only stored while the mission is EN_ROUTE and must
be stamped inside that window. The transition into COMPLETED stamps
completed_at and may file the report in the same transaction.
"""

import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AgencyNotFoundError,
    AssignmentRoleRequiredError,
    DuplicateAssignmentError,
    IncidentNotFoundError,
    IncidentNotVerifiedError,
    InvalidMissionTransitionError,
    LeaderRequiredError,
    MissionAlreadyActiveError,
    MissionNotCompletedError,
    MissionNotEnRouteError,
    MissionNotFoundError,
    NotAnApprovedVolunteerError,
    PermissionDeniedError,
    PreconditionFailedError,
    ResponderUnavailableError,
    TransitionNotAuthorizedError,
    ValidationError,
)
from app.core.metrics import MISSION_TRANSITIONS
from app.core.security import IdentityContext, ensure_role
from app.models.database import (
    Agency,
    AuditAction,
    EntityType,
    Incident,
    IncidentStatus,
    Mission,
    MissionAction,
    MissionAssignment,
    MissionLog,
    MissionPriority,
    MissionReport,
    MissionRole,
    MissionStatus,
    MissionTracking,
    UserRole,
    as_utc,
    compare_and_set_status,
    transaction,
    utcnow,
)
from app.models.schemas import AssignmentCreate, MissionCreate, MissionReportInput, TrackingPoint
from app.services.applications import ApplicationService
from app.services.audit import AuditRecorder
from app.services.mission_reports import MissionReportFinalizer
from app.services.state_machine import validate_mission_transition

logger = structlog.get_logger(__name__)

# Milestone column stamped when the mission enters the status
MILESTONES: Dict[MissionStatus, str] = {
    MissionStatus.ACCEPTED: "accepted_at",
    MissionStatus.EN_ROUTE: "en_route_at",
    MissionStatus.ON_SITE: "on_site_at",
    MissionStatus.COMPLETED: "completed_at",
}


class MissionService:
    """Mission creation, assignment and lifecycle."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AuditRecorder(session)
        self.applications = ApplicationService(session)
        self.reports = MissionReportFinalizer(session)

    # =========================================================================
    # Lookups
    # =========================================================================

    async def load(self, mission_id: uuid.UUID) -> Mission:
        mission = await self.session.get(Mission, mission_id)
        if mission is None:
            raise MissionNotFoundError(mission_id)
        return mission

    async def list_assignments(self, mission_id: uuid.UUID) -> List[MissionAssignment]:
        result = await self.session.execute(
            select(MissionAssignment)
            .where(MissionAssignment.mission_id == mission_id)
            .order_by(MissionAssignment.created_at)
        )
        return list(result.scalars())

    async def leader_id(self, mission_id: uuid.UUID) -> Optional[uuid.UUID]:
        return await self.session.scalar(
            select(MissionAssignment.assigned_to).where(
                MissionAssignment.mission_id == mission_id,
                MissionAssignment.role == MissionRole.LEADER,
            )
        )

    async def is_assigned(self, mission_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        found = await self.session.scalar(
            select(MissionAssignment.id).where(
                MissionAssignment.mission_id == mission_id,
                MissionAssignment.assigned_to == user_id,
            )
        )
        return found is not None

    async def _active_mission_id(self, incident_id: uuid.UUID) -> Optional[uuid.UUID]:
        return await self.session.scalar(
            select(Mission.id).where(
                Mission.incident_id == incident_id,
                Mission.status != MissionStatus.COMPLETED,
            )
        )

    async def get_mission(self, identity: IdentityContext, mission_id: uuid.UUID) -> Mission:
        ensure_role(identity, [UserRole.ADMIN, UserRole.VOLUNTEER], "view missions")
        return await self.load(mission_id)

    async def list_mission_logs(self, identity: IdentityContext, mission_id: uuid.UUID) -> List[MissionLog]:
        """Mission transcript in append order."""
        await self.get_mission(identity, mission_id)
        result = await self.session.execute(
            select(MissionLog)
            .where(MissionLog.mission_id == mission_id)
            .order_by(MissionLog.sequence)
        )
        return list(result.scalars())

    async def list_tracking(self, identity: IdentityContext, mission_id: uuid.UUID) -> List[MissionTracking]:
        await self.get_mission(identity, mission_id)
        result = await self.session.execute(
            select(MissionTracking)
            .where(MissionTracking.mission_id == mission_id)
            .order_by(MissionTracking.recorded_at)
        )
        return list(result.scalars())

    async def get_report(self, identity: IdentityContext, mission_id: uuid.UUID) -> Optional[MissionReport]:
        await self.get_mission(identity, mission_id)
        return await self.reports.get_report(mission_id)

    # =========================================================================
    # Creation and assignment
    # =========================================================================

    async def create_mission(self, identity: IdentityContext, payload: MissionCreate) -> Mission:
        """
        Create a mission for a VERIFIED incident.

        Writes the Mission (ASSIGNED), the CREATED log, the LEADER assignment,
        the ASSIGNED log and any MEMBER assignments in one transaction.

        Raises:
            LeaderRequiredError: No leader supplied
            IncidentNotVerifiedError: Incident is not VERIFIED
            MissionAlreadyActiveError: Incident already has an open mission
            NotAnApprovedVolunteerError: Leader or member is not approved
            ResponderUnavailableError: Leader or member is approved but unavailable
        """
        ensure_role(identity, [UserRole.ADMIN, UserRole.VOLUNTEER], "create missions")
        if payload.leader_id is None:
            raise LeaderRequiredError()
        if payload.leader_id in payload.member_ids:
            raise DuplicateAssignmentError(
                None,
                payload.leader_id,
                message="The leader cannot also be listed as a member.",
            )

        async with transaction(self.session):
            incident = await self.session.scalar(
                select(Incident).where(
                    Incident.id == payload.incident_id,
                    Incident.deleted_at.is_(None),
                )
            )
            if incident is None:
                raise IncidentNotFoundError(payload.incident_id)
            if incident.status != IncidentStatus.VERIFIED:
                logger.warning(
                    "Mission creation rejected",
                    incident_id=str(incident.id),
                    incident_status=incident.status.value,
                )
                raise IncidentNotVerifiedError(incident.id, incident.status.value)

            active_id = await self._active_mission_id(incident.id)
            if active_id is not None:
                raise MissionAlreadyActiveError(incident.id, active_id)

            if payload.agency_id is not None:
                agency = await self.session.get(Agency, payload.agency_id)
                if agency is None or not agency.is_active:
                    raise AgencyNotFoundError(payload.agency_id)

            mission = Mission(
                incident_id=incident.id,
                created_by=identity.user_id,
                agency_id=payload.agency_id,
                mission_type=payload.mission_type,
                priority=payload.priority or MissionPriority(settings.DEFAULT_MISSION_PRIORITY),
                status=MissionStatus.ASSIGNED,
            )
            self.session.add(mission)
            try:
                await self.session.flush()
            except IntegrityError as exc:
                # Partial unique index: another mission opened since the check
                logger.warning("Concurrent mission creation rejected", incident_id=str(incident.id))
                raise MissionAlreadyActiveError(incident.id) from exc

            await self._append_log(mission.id, identity.user_id, MissionAction.CREATED)
            await self._assign(mission.id, payload.leader_id, MissionRole.LEADER, identity.user_id)
            await self._append_log(mission.id, identity.user_id, MissionAction.ASSIGNED)
            for member_id in dict.fromkeys(payload.member_ids):
                await self._assign(mission.id, member_id, MissionRole.MEMBER, identity.user_id)

            await self.audit.record(
                identity.user_id,
                AuditAction.CREATE,
                EntityType.MISSION,
                mission.id,
                {
                    "incident_id": incident.id,
                    "leader_id": payload.leader_id,
                    "member_ids": list(dict.fromkeys(payload.member_ids)),
                    "priority": mission.priority,
                    "agency_id": payload.agency_id,
                },
            )

        logger.info(
            "Mission created",
            mission_id=str(mission.id),
            incident_id=str(incident.id),
            leader_id=str(payload.leader_id),
            priority=mission.priority.value,
        )
        return mission

    async def add_assignment(
        self,
        identity: IdentityContext,
        mission_id: uuid.UUID,
        payload: AssignmentCreate,
    ) -> MissionAssignment:
        """Add a responder to an open mission. Only the leader or an administrator may."""
        async with transaction(self.session):
            mission = await self.load(mission_id)
            await self._authorize_leader(identity, mission)
            if mission.status == MissionStatus.COMPLETED:
                raise PreconditionFailedError(
                    message="Responders cannot be added to a completed mission.",
                    error_code="MISSION_ALREADY_COMPLETED",
                    details={"mission_id": str(mission_id)},
                )

            assignment = await self._assign(mission_id, payload.assignee_id, payload.role, identity.user_id)
            await self.audit.record(
                identity.user_id,
                AuditAction.ASSIGN,
                EntityType.MISSION,
                mission_id,
                {"assignee_id": payload.assignee_id, "role": payload.role},
            )

        logger.info(
            "Responder assigned",
            mission_id=str(mission_id),
            assignee_id=str(payload.assignee_id),
            role=payload.role.value,
        )
        return assignment

    async def _assign(
        self,
        mission_id: uuid.UUID,
        assignee_id: uuid.UUID,
        role: Optional[MissionRole],
        assigned_by: uuid.UUID,
    ) -> MissionAssignment:
        if role is None:
            raise AssignmentRoleRequiredError(assignee_id)

        if await self.is_assigned(mission_id, assignee_id):
            raise DuplicateAssignmentError(mission_id, assignee_id)
        if role == MissionRole.LEADER and await self.leader_id(mission_id) is not None:
            raise DuplicateAssignmentError(
                mission_id,
                assignee_id,
                message="This mission already has a leader.",
            )

        if settings.REQUIRE_APPROVED_RESPONDERS and not await self.applications.is_eligible_responder(assignee_id):
            if await self.applications.is_approved_volunteer(assignee_id):
                raise ResponderUnavailableError(assignee_id)
            raise NotAnApprovedVolunteerError(assignee_id)

        assignment = MissionAssignment(
            mission_id=mission_id,
            assigned_to=assignee_id,
            assigned_by=assigned_by,
            role=role,
        )
        self.session.add(assignment)
        await self.session.flush()
        return assignment

    async def _append_log(
        self,
        mission_id: uuid.UUID,
        actor_id: uuid.UUID,
        action: MissionAction,
        note: Optional[str] = None,
    ) -> MissionLog:
        last = await self.session.scalar(
            select(func.max(MissionLog.sequence)).where(MissionLog.mission_id == mission_id)
        )
        entry = MissionLog(
            mission_id=mission_id,
            sequence=(last or 0) + 1,
            actor_id=actor_id,
            action=action,
            note=note,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def _authorize_leader(self, identity: IdentityContext, mission: Mission) -> None:
        if identity.is_admin:
            return
        if await self.leader_id(mission.id) != identity.user_id:
            logger.warning(
                "Mission change not authorized",
                mission_id=str(mission.id),
                actor_id=str(identity.user_id),
            )
            raise TransitionNotAuthorizedError(mission.id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def advance_mission(
        self,
        identity: IdentityContext,
        mission_id: uuid.UUID,
        next_status: MissionStatus,
        note: Optional[str] = None,
        tracking_points: Sequence[TrackingPoint] = (),
        report: Optional[MissionReportInput] = None,
    ) -> Mission:
        """
        Move a mission to the immediate next status.

        Args:
            identity: Assigned leader or an administrator
            mission_id: Mission to advance
            next_status: Must be the direct successor of the current status
            note: Optional note stored on the log entry
            tracking_points: Points recorded with the move into EN_ROUTE
            report: Report to file with the move into COMPLETED

        Raises:
            MissionNotFoundError, TransitionNotAuthorizedError,
            InvalidMissionTransitionError, ConflictError
        """
        async with transaction(self.session):
            mission, previous = await self._advance(
                identity, mission_id, next_status, note, tracking_points, report
            )

        self._committed(mission_id, previous, next_status)
        return mission

    async def _advance(
        self,
        identity: IdentityContext,
        mission_id: uuid.UUID,
        next_status: MissionStatus,
        note: Optional[str] = None,
        tracking_points: Sequence[TrackingPoint] = (),
        report: Optional[MissionReportInput] = None,
    ) -> Tuple[Mission, MissionStatus]:
        mission = await self.load(mission_id)
        await self._authorize_leader(identity, mission)

        current = mission.status
        try:
            validate_mission_transition(current, next_status)
        except InvalidMissionTransitionError as exc:
            logger.warning(
                "Mission transition rejected",
                mission_id=str(mission_id),
                from_status=current.value,
                to_status=next_status.value,
                error_code=exc.error_code,
            )
            raise

        if tracking_points and next_status != MissionStatus.EN_ROUTE:
            raise MissionNotEnRouteError(mission_id, next_status.value)
        if report is not None and next_status != MissionStatus.COMPLETED:
            raise ValidationError(
                "A report can only accompany the move to COMPLETED",
                field="report",
            )

        values = {}
        if next_status in MILESTONES:
            values[MILESTONES[next_status]] = utcnow()

        mission = await compare_and_set_status(
            self.session, Mission, mission_id, current, next_status, **values
        )
        await self._append_log(mission_id, identity.user_id, MissionAction(next_status.value), note)

        for point in tracking_points:
            self._add_tracking(
                mission_id,
                identity.user_id,
                point.latitude,
                point.longitude,
                self._tracking_time(mission, point.recorded_at),
            )

        await self.audit.record(
            identity.user_id,
            AuditAction.UPDATE_STATUS,
            EntityType.MISSION,
            mission_id,
            {
                "from": current,
                "to": next_status,
                "tracking_points": len(tracking_points),
                "with_report": report is not None,
            },
        )

        if report is not None:
            await self.reports.finalize(mission, identity.user_id, report)

        return mission, current

    def _committed(self, mission_id: uuid.UUID, previous: MissionStatus, new: MissionStatus) -> None:
        MISSION_TRANSITIONS.labels(from_status=previous.value, to_status=new.value).inc()
        logger.info(
            "Mission status changed",
            mission_id=str(mission_id),
            from_status=previous.value,
            to_status=new.value,
        )

    # =========================================================================
    # Tracking
    # =========================================================================

    async def record_tracking(
        self,
        identity: IdentityContext,
        mission_id: uuid.UUID,
        latitude: float,
        longitude: float,
        recorded_at: Optional[datetime] = None,
    ) -> MissionTracking:
        """Store a location snapshot from an assigned responder while EN_ROUTE."""
        point = TrackingPoint(latitude=latitude, longitude=longitude, recorded_at=recorded_at)

        async with transaction(self.session):
            mission = await self.load(mission_id)
            if not await self.is_assigned(mission_id, identity.user_id):
                raise PermissionDeniedError(
                    "Only responders assigned to this mission can report its location.",
                    resource=f"mission:{mission_id}",
                )
            if mission.status != MissionStatus.EN_ROUTE:
                raise MissionNotEnRouteError(mission_id, mission.status.value)

            # Row lock keeps the point inside the EN_ROUTE window
            mission = await compare_and_set_status(
                self.session, Mission, mission_id, MissionStatus.EN_ROUTE, MissionStatus.EN_ROUTE
            )
            tracking = self._add_tracking(
                mission_id,
                identity.user_id,
                point.latitude,
                point.longitude,
                self._tracking_time(mission, point.recorded_at),
            )
            await self.session.flush()

            await self.audit.record(
                identity.user_id,
                AuditAction.TRACK,
                EntityType.MISSION,
                mission_id,
                {"latitude": point.latitude, "longitude": point.longitude},
            )

        logger.debug("Tracking point recorded", mission_id=str(mission_id), volunteer_id=str(identity.user_id))
        return tracking

    @staticmethod
    def _tracking_time(mission: Mission, recorded_at: Optional[datetime]) -> datetime:
        """
        Server time when the device sent none; otherwise the device time,
        which must fall between entering EN_ROUTE and now.
        """
        now = utcnow()
        if recorded_at is None:
            return now

        skew = timedelta(seconds=settings.TRACKING_CLOCK_SKEW_SECONDS)
        stamp = as_utc(recorded_at)
        started = as_utc(mission.en_route_at) or now
        if stamp < started - skew or stamp > now + skew:
            logger.warning(
                "Tracking point outside EN_ROUTE window",
                mission_id=str(mission.id),
                recorded_at=stamp.isoformat(),
                en_route_at=started.isoformat(),
            )
            raise ValidationError(
                "recorded_at must fall between the move to EN_ROUTE and now",
                field="recorded_at",
            )
        return stamp

    def _add_tracking(self, mission_id, volunteer_id, latitude, longitude, recorded_at) -> MissionTracking:
        tracking = MissionTracking(
            mission_id=mission_id,
            volunteer_id=volunteer_id,
            latitude=latitude,
            longitude=longitude,
            recorded_at=recorded_at,
        )
        self.session.add(tracking)
        return tracking

    # =========================================================================
    # Reports
    # =========================================================================

    async def submit_mission_report(
        self,
        identity: IdentityContext,
        mission_id: uuid.UUID,
        payload: MissionReportInput,
    ) -> MissionReport:
        """
        File the after-action report.

        An ON_SITE mission is completed and reported in one transaction; a
        COMPLETED mission without a report gets it back-filled. A second
        report fails with ReportAlreadyExistsError.
        """
        completed_from = None

        async with transaction(self.session):
            mission = await self.load(mission_id)
            await self._authorize_leader(identity, mission)

            if mission.status == MissionStatus.ON_SITE:
                mission, completed_from = await self._advance(
                    identity, mission_id, MissionStatus.COMPLETED, report=payload
                )
                report = await self.reports.get_report(mission_id)
            elif mission.status == MissionStatus.COMPLETED:
                report = await self.reports.finalize(mission, identity.user_id, payload)
            else:
                raise MissionNotCompletedError(mission_id, mission.status.value)

        if completed_from is not None:
            self._committed(mission_id, completed_from, MissionStatus.COMPLETED)
        return report
