import pytest
from sqlalchemy import select

from app.core.exceptions import (
    IncidentNotVerifiableError,
    InvalidTransitionError,
    PermissionDeniedError,
    VerificationRequiredError,
)
from app.models.database import (
    AuditLog,
    Incident,
    IncidentStatus,
    IncidentVerification,
    VerificationDecision,
)
from app.models.schemas import VerificationCreate
from app.services.incidents import IncidentService
from app.services.verification import VerificationService


@pytest.mark.asyncio
async def test_verification_is_evidence_only(session, seed, volunteer):
    incident = await seed.incident(IncidentStatus.AWAITING_VERIFICATION)

    verification = await VerificationService(session).record_verification(
        volunteer,
        incident.id,
        VerificationCreate(decision=VerificationDecision.VERIFIED, comment="Confirmed by phone"),
    )

    assert verification.decision == VerificationDecision.VERIFIED
    status = await session.scalar(select(Incident.status).where(Incident.id == incident.id))
    assert status == IncidentStatus.AWAITING_VERIFICATION


@pytest.mark.asyncio
async def test_admin_transition_requires_matching_latest_decision(session, seed, volunteer, admin):
    incident = await seed.incident(IncidentStatus.AWAITING_VERIFICATION)
    verifications = VerificationService(session)
    incidents = IncidentService(session)

    await verifications.record_verification(
        volunteer, incident.id, VerificationCreate(decision=VerificationDecision.UNREACHABLE)
    )
    with pytest.raises(VerificationRequiredError):
        await incidents.update_incident_status(admin, incident.id, IncidentStatus.VERIFIED)

    await incidents.update_incident_status(admin, incident.id, IncidentStatus.UNREACHABLE)
    await incidents.update_incident_status(admin, incident.id, IncidentStatus.AWAITING_VERIFICATION)

    # Retry after UNREACHABLE
    await verifications.record_verification(
        volunteer, incident.id, VerificationCreate(decision=VerificationDecision.VERIFIED)
    )
    updated = await incidents.update_incident_status(admin, incident.id, IncidentStatus.VERIFIED)
    assert updated.status == IncidentStatus.VERIFIED

    history = await verifications.list_verifications(admin, incident.id)
    assert [v.decision for v in history] == [VerificationDecision.VERIFIED, VerificationDecision.UNREACHABLE]


@pytest.mark.asyncio
async def test_apply_decision_is_atomic(session, seed, admin):
    incident = await seed.incident(IncidentStatus.AWAITING_VERIFICATION)

    await VerificationService(session).record_verification(
        admin,
        incident.id,
        VerificationCreate(decision=VerificationDecision.FALSE_REPORT, apply_decision=True),
    )

    status = await session.scalar(select(Incident.status).where(Incident.id == incident.id))
    assert status == IncidentStatus.FALSE_REPORT
    actions = (await session.execute(select(AuditLog.action))).scalars().all()
    assert sorted(actions) == ["UPDATE_STATUS", "VERIFY"]


@pytest.mark.asyncio
async def test_apply_decision_from_reported_rolls_back(session, seed, admin):
    incident = await seed.incident(IncidentStatus.REPORTED)

    with pytest.raises(InvalidTransitionError):
        await VerificationService(session).record_verification(
            admin,
            incident.id,
            VerificationCreate(decision=VerificationDecision.VERIFIED, apply_decision=True),
        )

    rows = (await session.execute(select(IncidentVerification))).scalars().all()
    assert rows == []
    assert (await session.execute(select(AuditLog))).scalars().all() == []


@pytest.mark.asyncio
async def test_only_admin_applies_decision(session, seed, volunteer, civilian):
    incident = await seed.incident(IncidentStatus.AWAITING_VERIFICATION)
    service = VerificationService(session)

    with pytest.raises(PermissionDeniedError):
        await service.record_verification(
            volunteer,
            incident.id,
            VerificationCreate(decision=VerificationDecision.VERIFIED, apply_decision=True),
        )
    with pytest.raises(PermissionDeniedError):
        await service.record_verification(
            civilian, incident.id, VerificationCreate(decision=VerificationDecision.VERIFIED)
        )


@pytest.mark.asyncio
async def test_closed_incident_is_not_verifiable(session, seed, volunteer):
    incident = await seed.incident(IncidentStatus.CLOSED)
    with pytest.raises(IncidentNotVerifiableError):
        await VerificationService(session).record_verification(
            volunteer, incident.id, VerificationCreate(decision=VerificationDecision.VERIFIED)
        )
