import uuid

import pytest
from sqlalchemy import select

from app.core.exceptions import (
    CategoryInactiveError,
    CategoryNotFoundError,
    IncidentNotFoundError,
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
    VerificationRequiredError,
)
from app.models.database import AuditLog, Incident, IncidentMedia, IncidentStatus, MediaType
from app.models.schemas import IncidentCreate, MediaItem
from app.services.incidents import IncidentService


def incident_payload(category_id, **overrides):
    data = {
        "title": "Car crash on highway",
        "description": "Two vehicles",
        "category_id": category_id,
        "latitude": 32.08,
        "longitude": 34.78,
    }
    data.update(overrides)
    return IncidentCreate(**data)


@pytest.mark.asyncio
async def test_create_incident_starts_reported(session, seed, civilian):
    category = await seed.category()
    payload = incident_payload(
        category.id,
        media=[MediaItem(url="https://cdn.example/1.jpg"), MediaItem(url="https://cdn.example/2.mp4", media_type=MediaType.VIDEO)],
    )

    incident = await IncidentService(session).create_incident(civilian, payload)

    assert incident.status == IncidentStatus.REPORTED
    assert incident.reported_by == civilian.user_id
    media = (await session.execute(select(IncidentMedia))).scalars().all()
    assert len(media) == 2
    audit = (await session.execute(select(AuditLog))).scalars().all()
    assert [a.action for a in audit] == ["CREATE"]


@pytest.mark.asyncio
async def test_create_incident_for_someone_else_appends_note(session, seed, civilian):
    category = await seed.category()
    service = IncidentService(session)

    with pytest.raises(ValidationError):
        await service.create_incident(civilian, incident_payload(category.id, for_self=False))

    incident = await service.create_incident(
        civilian,
        incident_payload(category.id, for_self=False, reporter_note="Neighbour called me"),
    )
    assert incident.description == "Two vehicles | Neighbour called me"


@pytest.mark.asyncio
async def test_create_incident_rejects_unknown_or_inactive_category(session, seed, civilian):
    service = IncidentService(session)
    with pytest.raises(CategoryNotFoundError):
        await service.create_incident(civilian, incident_payload(uuid.uuid4()))

    inactive = await seed.category(is_active=False)
    with pytest.raises(CategoryInactiveError):
        await service.create_incident(civilian, incident_payload(inactive.id))

    count = len((await session.execute(select(Incident))).scalars().all())
    assert count == 0


@pytest.mark.asyncio
async def test_create_incident_limits(session, seed, civilian, volunteer):
    category = await seed.category()
    service = IncidentService(session)

    with pytest.raises(ValidationError):
        await service.create_incident(civilian, incident_payload(category.id, title="ab"))

    too_many = [MediaItem(url=f"https://cdn.example/{i}.jpg") for i in range(6)]
    with pytest.raises(ValidationError):
        await service.create_incident(civilian, incident_payload(category.id, media=too_many))

    with pytest.raises(PermissionDeniedError):
        await service.create_incident(volunteer, incident_payload(category.id))


@pytest.mark.asyncio
async def test_reporter_close_requires_note_and_ownership(session, seed, civilian):
    incident = await seed.incident(reported_by=civilian.user_id)
    service = IncidentService(session)

    with pytest.raises(ValidationError):
        await service.close_incident_by_reporter(civilian, incident.id, "   ")

    stranger = type(civilian)(user_id=uuid.uuid4(), role=civilian.role)
    with pytest.raises(PermissionDeniedError):
        await service.close_incident_by_reporter(stranger, incident.id, "Resolved by neighbours")

    closed = await service.close_incident_by_reporter(civilian, incident.id, "Resolved by neighbours")
    assert closed.status == IncidentStatus.CLOSED

    audit = (await session.execute(select(AuditLog).where(AuditLog.action == "CLOSE"))).scalar_one()
    assert audit.meta["closedBy"] == "REPORTER"
    assert audit.meta["previous_status"] == "REPORTED"
    assert audit.meta["note"] == "Resolved by neighbours"

    with pytest.raises(InvalidTransitionError):
        await service.close_incident_by_reporter(civilian, incident.id, "Closing it again")


@pytest.mark.asyncio
async def test_reporter_close_from_awaiting_verification(session, seed, civilian):
    incident = await seed.incident(IncidentStatus.AWAITING_VERIFICATION, reported_by=civilian.user_id)
    closed = await IncidentService(session).close_incident_by_reporter(civilian, incident.id, "False alarm, sorry")
    assert closed.status == IncidentStatus.CLOSED


@pytest.mark.asyncio
async def test_reporter_cannot_close_resolved(session, seed, civilian):
    incident = await seed.incident(IncidentStatus.RESOLVED, reported_by=civilian.user_id)
    with pytest.raises(InvalidTransitionError):
        await IncidentService(session).close_incident_by_reporter(civilian, incident.id, "Already handled")


@pytest.mark.asyncio
async def test_admin_transition_follows_adjacency(session, seed, admin, volunteer):
    incident = await seed.incident()
    service = IncidentService(session)

    with pytest.raises(InvalidTransitionError):
        await service.update_incident_status(admin, incident.id, IncidentStatus.RESOLVED)

    with pytest.raises(PermissionDeniedError):
        await service.update_incident_status(volunteer, incident.id, IncidentStatus.AWAITING_VERIFICATION)

    updated = await service.update_incident_status(admin, incident.id, IncidentStatus.AWAITING_VERIFICATION)
    assert updated.status == IncidentStatus.AWAITING_VERIFICATION

    # Decision statuses need a matching verification
    with pytest.raises(VerificationRequiredError):
        await service.update_incident_status(admin, incident.id, IncidentStatus.VERIFIED)

    rows = (await session.execute(select(AuditLog).where(AuditLog.action == "UPDATE_STATUS"))).scalars().all()
    assert len(rows) == 1
    assert rows[0].meta == {"from": "REPORTED", "to": "AWAITING_VERIFICATION"}


@pytest.mark.asyncio
async def test_get_incident_visibility(session, seed, civilian, volunteer):
    incident = await seed.incident(reported_by=civilian.user_id)
    service = IncidentService(session)

    assert (await service.get_incident(civilian, incident.id)).id == incident.id
    assert (await service.get_incident(volunteer, incident.id)).id == incident.id

    other = type(civilian)(user_id=uuid.uuid4(), role=civilian.role)
    with pytest.raises(PermissionDeniedError):
        await service.get_incident(other, incident.id)


@pytest.mark.asyncio
async def test_soft_delete_hides_incident(session, seed, admin):
    incident = await seed.incident()
    service = IncidentService(session)

    await service.soft_delete_incident(admin, incident.id)

    with pytest.raises(IncidentNotFoundError):
        await service.get_incident(admin, incident.id)

    row = (await session.execute(select(Incident).where(Incident.id == incident.id))).scalar_one()
    assert row.deleted_at is not None


@pytest.mark.asyncio
async def test_list_incidents_paginates_and_filters(session, seed, civilian, volunteer):
    for _ in range(3):
        await seed.incident(reported_by=civilian.user_id)
    await seed.incident(IncidentStatus.VERIFIED)
    service = IncidentService(session)

    items, pagination = await service.list_incidents(volunteer, page=1, per_page=2)
    assert len(items) == 2
    assert pagination == {"total_records": 4, "total_pages": 2, "current_page": 1, "per_page": 2}

    verified, pagination = await service.list_incidents(volunteer, status=IncidentStatus.VERIFIED)
    assert len(verified) == 1
    assert pagination["total_records"] == 1

    mine, pagination = await service.list_my_incidents(civilian)
    assert len(mine) == 3

    with pytest.raises(PermissionDeniedError):
        await service.list_incidents(civilian)
