import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from app.core.exceptions import (
    AssignmentRoleRequiredError,
    ConflictError,
    DuplicateAssignmentError,
    ErrorKind,
    IncidentNotVerifiedError,
    InvalidMissionTransitionError,
    LeaderRequiredError,
    MissionAlreadyActiveError,
    MissionNotEnRouteError,
    NotAnApprovedVolunteerError,
    PermissionDeniedError,
    ResponderUnavailableError,
    TransitionNotAuthorizedError,
    ValidationError,
)
from app.models.database import (
    IncidentStatus,
    Mission,
    MissionAction,
    MissionAssignment,
    MissionLog,
    MissionReport,
    MissionRole,
    MissionStatus,
    MissionTracking,
    VerificationDecision,
    VolunteerProfile,
)
from app.models.schemas import (
    AssignmentCreate,
    IncidentCreate,
    MissionCreate,
    MissionReportInput,
    TrackingPoint,
    VerificationCreate,
)
from app.services.incidents import IncidentService
from app.services.missions import MissionService
from app.services.verification import VerificationService


async def log_actions(session, mission_id):
    result = await session.execute(
        select(MissionLog.action).where(MissionLog.mission_id == mission_id).order_by(MissionLog.sequence)
    )
    return list(result.scalars())


@pytest.mark.asyncio
async def test_incident_to_mission_scenario(session, seed, civilian, admin):
    leader = await seed.approved_volunteer()
    category = await seed.category()
    incidents = IncidentService(session)

    incident = await incidents.create_incident(civilian, IncidentCreate(
        title="Person trapped in lift",
        category_id=category.id,
        latitude=31.25,
        longitude=34.79,
    ))
    await incidents.update_incident_status(admin, incident.id, IncidentStatus.AWAITING_VERIFICATION)
    await VerificationService(session).record_verification(
        leader, incident.id, VerificationCreate(decision=VerificationDecision.VERIFIED)
    )
    await incidents.update_incident_status(admin, incident.id, IncidentStatus.VERIFIED)

    mission = await MissionService(session).create_mission(
        admin, MissionCreate(incident_id=incident.id, leader_id=leader.user_id)
    )

    assert mission.status == MissionStatus.ASSIGNED
    assignments = (await session.execute(
        select(MissionAssignment).where(MissionAssignment.mission_id == mission.id)
    )).scalars().all()
    assert [(a.assigned_to, a.role) for a in assignments] == [(leader.user_id, MissionRole.LEADER)]
    assert await log_actions(session, mission.id) == [MissionAction.CREATED, MissionAction.ASSIGNED]


@pytest.mark.asyncio
async def test_full_lifecycle_logs_tracking_and_report(session, dispatch):
    mission, leader = await dispatch()
    service = MissionService(session)

    await service.advance_mission(leader, mission.id, MissionStatus.ACCEPTED)
    await service.advance_mission(
        leader,
        mission.id,
        MissionStatus.EN_ROUTE,
        tracking_points=[TrackingPoint(latitude=31.70, longitude=35.10)],
    )
    await service.record_tracking(leader, mission.id, 31.75, 35.15)
    await service.advance_mission(leader, mission.id, MissionStatus.ON_SITE, note="Arrived at gate")
    done = await service.advance_mission(
        leader,
        mission.id,
        MissionStatus.COMPLETED,
        report=MissionReportInput(summary="Patient evacuated", casualties=0),
    )

    assert done.status == MissionStatus.COMPLETED
    assert done.accepted_at is not None
    assert done.en_route_at is not None
    assert done.on_site_at is not None
    assert done.completed_at is not None

    actions = await log_actions(session, mission.id)
    # Six rows: the CREATED entry plus one per status ASSIGNED through COMPLETED
    assert actions == [
        MissionAction.CREATED,
        MissionAction.ASSIGNED,
        MissionAction.ACCEPTED,
        MissionAction.EN_ROUTE,
        MissionAction.ON_SITE,
        MissionAction.COMPLETED,
    ]
    # One entry per status the mission has been in
    assert len([a for a in actions if a != MissionAction.CREATED]) == 5

    tracking = await service.list_tracking(leader, mission.id)
    assert len(tracking) == 2
    reports = await session.scalar(
        select(func.count()).select_from(MissionReport).where(MissionReport.mission_id == mission.id)
    )
    assert reports == 1


@pytest.mark.asyncio
async def test_concurrent_accept_only_one_wins(session_maker, dispatch):
    mission, leader = await dispatch()

    async with session_maker() as first, session_maker() as second:
        # first reads ASSIGNED and keeps the stale row in its identity map
        stale = await first.get(Mission, mission.id)
        assert stale.status == MissionStatus.ASSIGNED
        await first.commit()

        await MissionService(second).advance_mission(leader, mission.id, MissionStatus.ACCEPTED)

        with pytest.raises(ConflictError) as exc_info:
            await MissionService(first).advance_mission(leader, mission.id, MissionStatus.ACCEPTED)
        assert exc_info.value.kind == ErrorKind.CONFLICT

    async with session_maker() as check:
        status = await check.scalar(select(Mission.status).where(Mission.id == mission.id))
        assert status == MissionStatus.ACCEPTED
        assert (await log_actions(check, mission.id)).count(MissionAction.ACCEPTED) == 1


@pytest.mark.asyncio
async def test_create_mission_requires_verified_incident(session, seed, admin):
    leader = await seed.approved_volunteer()
    incident = await seed.incident(IncidentStatus.REPORTED)

    with pytest.raises(IncidentNotVerifiedError) as exc_info:
        await MissionService(session).create_mission(
            admin, MissionCreate(incident_id=incident.id, leader_id=leader.user_id)
        )
    assert exc_info.value.kind == ErrorKind.PRECONDITION_FAILED
    assert await session.scalar(select(func.count()).select_from(Mission)) == 0


@pytest.mark.asyncio
async def test_create_mission_requires_leader(session, seed, admin):
    incident = await seed.incident(IncidentStatus.VERIFIED)
    with pytest.raises(LeaderRequiredError):
        await MissionService(session).create_mission(admin, MissionCreate(incident_id=incident.id))


@pytest.mark.asyncio
async def test_create_mission_rejects_unapproved_leader_atomically(session, seed, admin):
    incident = await seed.incident(IncidentStatus.VERIFIED)

    with pytest.raises(NotAnApprovedVolunteerError):
        await MissionService(session).create_mission(
            admin, MissionCreate(incident_id=incident.id, leader_id=uuid.uuid4())
        )

    assert await session.scalar(select(func.count()).select_from(Mission)) == 0
    assert await session.scalar(select(func.count()).select_from(MissionLog)) == 0


@pytest.mark.asyncio
async def test_one_active_mission_per_incident(session, seed, admin, dispatch):
    mission, leader = await dispatch()
    other_leader = await seed.approved_volunteer()

    with pytest.raises(MissionAlreadyActiveError):
        await MissionService(session).create_mission(
            admin, MissionCreate(incident_id=mission.incident_id, leader_id=other_leader.user_id)
        )


@pytest.mark.asyncio
async def test_concurrent_create_leaves_one_active_mission(session_maker, seed, admin):
    incident = await seed.incident(IncidentStatus.VERIFIED)
    leader_a = await seed.approved_volunteer()
    leader_b = await seed.approved_volunteer()
    check_active = MissionService._active_mission_id

    async with session_maker() as first, session_maker() as second:
        async def check_then_race(service, incident_id):
            found = await check_active(service, incident_id)
            if service.session is first:
                # second commits a mission after first has seen none
                await MissionService(second).create_mission(
                    admin, MissionCreate(incident_id=incident_id, leader_id=leader_b.user_id)
                )
            return found

        with patch.object(MissionService, "_active_mission_id", new=check_then_race):
            with pytest.raises(MissionAlreadyActiveError) as exc_info:
                await MissionService(first).create_mission(
                    admin, MissionCreate(incident_id=incident.id, leader_id=leader_a.user_id)
                )
        assert exc_info.value.details == {"incident_id": str(incident.id)}

    async with session_maker() as check:
        missions = (await check.execute(
            select(Mission).where(Mission.incident_id == incident.id)
        )).scalars().all()
        assert len(missions) == 1
        assert await check.scalar(
            select(MissionAssignment.assigned_to).where(MissionAssignment.mission_id == missions[0].id)
        ) == leader_b.user_id


@pytest.mark.asyncio
async def test_members_and_assignment_rules(session, seed, admin, dispatch):
    member = await seed.approved_volunteer()
    mission, leader = await dispatch(member_ids=[member.user_id])
    service = MissionService(session)

    roles = {a.assigned_to: a.role for a in await service.list_assignments(mission.id)}
    assert roles == {leader.user_id: MissionRole.LEADER, member.user_id: MissionRole.MEMBER}

    newcomer = await seed.approved_volunteer()
    with pytest.raises(AssignmentRoleRequiredError):
        await service.add_assignment(admin, mission.id, AssignmentCreate(assignee_id=newcomer.user_id))
    with pytest.raises(DuplicateAssignmentError):
        await service.add_assignment(
            admin, mission.id, AssignmentCreate(assignee_id=member.user_id, role=MissionRole.MEMBER)
        )
    with pytest.raises(DuplicateAssignmentError):
        await service.add_assignment(
            admin, mission.id, AssignmentCreate(assignee_id=newcomer.user_id, role=MissionRole.LEADER)
        )

    assignment = await service.add_assignment(
        leader, mission.id, AssignmentCreate(assignee_id=newcomer.user_id, role=MissionRole.MEMBER)
    )
    assert assignment.role == MissionRole.MEMBER

    leaders = await session.scalar(
        select(func.count()).select_from(MissionAssignment).where(
            MissionAssignment.mission_id == mission.id,
            MissionAssignment.role == MissionRole.LEADER,
        )
    )
    assert leaders == 1


@pytest.mark.asyncio
async def test_advance_rejects_skips_and_regressions(session, dispatch):
    mission, leader = await dispatch()
    service = MissionService(session)

    with pytest.raises(InvalidMissionTransitionError):
        await service.advance_mission(leader, mission.id, MissionStatus.ON_SITE)

    await service.advance_mission(leader, mission.id, MissionStatus.ACCEPTED)
    with pytest.raises(InvalidMissionTransitionError):
        await service.advance_mission(leader, mission.id, MissionStatus.ASSIGNED)

    assert await log_actions(session, mission.id) == [
        MissionAction.CREATED,
        MissionAction.ASSIGNED,
        MissionAction.ACCEPTED,
    ]


@pytest.mark.asyncio
async def test_only_leader_or_admin_advances(session, seed, admin, dispatch):
    member = await seed.approved_volunteer()
    mission, leader = await dispatch(member_ids=[member.user_id])
    service = MissionService(session)

    with pytest.raises(TransitionNotAuthorizedError):
        await service.advance_mission(member, mission.id, MissionStatus.ACCEPTED)

    updated = await service.advance_mission(admin, mission.id, MissionStatus.ACCEPTED)
    assert updated.status == MissionStatus.ACCEPTED


@pytest.mark.asyncio
async def test_tracking_only_while_en_route(session, seed, dispatch):
    member = await seed.approved_volunteer()
    mission, leader = await dispatch(member_ids=[member.user_id])
    service = MissionService(session)

    with pytest.raises(MissionNotEnRouteError):
        await service.record_tracking(leader, mission.id, 31.7, 35.1)

    with pytest.raises(MissionNotEnRouteError):
        await service.advance_mission(
            leader,
            mission.id,
            MissionStatus.ACCEPTED,
            tracking_points=[TrackingPoint(latitude=31.7, longitude=35.1)],
        )

    await service.advance_mission(leader, mission.id, MissionStatus.ACCEPTED)
    await service.advance_mission(leader, mission.id, MissionStatus.EN_ROUTE)
    point = await service.record_tracking(member, mission.id, 31.7, 35.1)
    assert point.volunteer_id == member.user_id

    outsider = await seed.approved_volunteer()
    with pytest.raises(PermissionDeniedError):
        await service.record_tracking(outsider, mission.id, 31.7, 35.1)

    await service.advance_mission(leader, mission.id, MissionStatus.ON_SITE)
    with pytest.raises(MissionNotEnRouteError):
        await service.record_tracking(leader, mission.id, 31.7, 35.1)

    assert await session.scalar(select(func.count()).select_from(MissionTracking)) == 1


@pytest.mark.asyncio
async def test_tracking_time_must_fall_inside_en_route_window(session, dispatch):
    mission, leader = await dispatch()
    service = MissionService(session)
    await service.advance_mission(leader, mission.id, MissionStatus.ACCEPTED)
    await service.advance_mission(leader, mission.id, MissionStatus.EN_ROUTE)

    with pytest.raises(ValidationError) as exc_info:
        await service.record_tracking(leader, mission.id, 31.7, 35.1, datetime(2000, 1, 1))
    assert exc_info.value.details == {"field": "recorded_at"}

    with pytest.raises(ValidationError):
        await service.record_tracking(
            leader, mission.id, 31.7, 35.1, datetime.now(timezone.utc) + timedelta(hours=1)
        )

    stamp = datetime.now(timezone.utc)
    point = await service.record_tracking(leader, mission.id, 31.7, 35.1, stamp)
    assert point.recorded_at == stamp

    assert await session.scalar(select(func.count()).select_from(MissionTracking)) == 1


@pytest.mark.asyncio
async def test_backdated_points_block_move_to_en_route(session, dispatch):
    mission, leader = await dispatch()
    service = MissionService(session)
    await service.advance_mission(leader, mission.id, MissionStatus.ACCEPTED)

    with pytest.raises(ValidationError):
        await service.advance_mission(
            leader,
            mission.id,
            MissionStatus.EN_ROUTE,
            tracking_points=[TrackingPoint(latitude=31.7, longitude=35.1, recorded_at=datetime(2000, 1, 1))],
        )

    status = await session.scalar(select(Mission.status).where(Mission.id == mission.id))
    assert status == MissionStatus.ACCEPTED
    assert await session.scalar(select(func.count()).select_from(MissionTracking)) == 0


@pytest.mark.asyncio
async def test_unavailable_volunteer_cannot_be_assigned(session, seed, admin):
    leader = await seed.approved_volunteer()
    session.add(VolunteerProfile(user_id=leader.user_id, is_available=False))
    await session.commit()
    incident = await seed.incident(IncidentStatus.VERIFIED)

    with pytest.raises(ResponderUnavailableError) as exc_info:
        await MissionService(session).create_mission(
            admin, MissionCreate(incident_id=incident.id, leader_id=leader.user_id)
        )
    assert exc_info.value.error_code == "RESPONDER_UNAVAILABLE"
    assert await session.scalar(select(func.count()).select_from(Mission)) == 0
