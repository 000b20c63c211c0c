import os
import uuid
from datetime import date

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.security import IdentityContext
from app.models.database import (
    Agency,
    ApplicationStatus,
    Base,
    Incident,
    IncidentCategory,
    IncidentStatus,
    IncidentVerification,
    Skill,
    UserRole,
    VerificationDecision,
    VolunteerApplication,
)
from app.models.schemas import MissionCreate
from app.services.missions import MissionService


@pytest_asyncio.fixture()
async def engine(tmp_path):
    # Isolated file database per test
    db_path = tmp_path / "test.db"
    eng = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def session(session_maker):
    async with session_maker() as s:
        yield s


def make_identity(role: UserRole) -> IdentityContext:
    return IdentityContext(user_id=uuid.uuid4(), role=role)


@pytest.fixture()
def civilian():
    return make_identity(UserRole.CIVILIAN)


@pytest.fixture()
def volunteer():
    return make_identity(UserRole.VOLUNTEER)


@pytest.fixture()
def admin():
    return make_identity(UserRole.ADMIN)


class Seed:
    """Inserts reference rows directly, bypassing the services."""

    def __init__(self, session_maker):
        self.session_maker = session_maker

    async def _add(self, obj):
        async with self.session_maker() as s:
            s.add(obj)
            await s.commit()
        return obj

    async def category(self, name=None, is_active=True) -> IncidentCategory:
        return await self._add(IncidentCategory(name=name or f"cat-{uuid.uuid4().hex[:6]}", is_active=is_active))

    async def agency(self, name="Red Crescent", is_active=True) -> Agency:
        return await self._add(Agency(name=name, region="North", is_active=is_active))

    async def skill(self, name=None) -> Skill:
        return await self._add(Skill(name=name or f"skill-{uuid.uuid4().hex[:6]}"))

    async def approved_volunteer(self, user_id=None) -> IdentityContext:
        identity = IdentityContext(user_id=user_id or uuid.uuid4(), role=UserRole.VOLUNTEER)
        agency = await self.agency()
        await self._add(VolunteerApplication(
            user_id=identity.user_id,
            agency_id=agency.id,
            status=ApplicationStatus.APPROVED,
            date_of_birth=date(1990, 1, 1),
            national_id_number="ID-1",
            national_id_url="https://files.example/id.png",
            address="1 Main St",
            consent_given=True,
        ))
        return identity

    async def incident(self, status=IncidentStatus.REPORTED, reported_by=None) -> Incident:
        category = await self.category()
        incident = await self._add(Incident(
            title="Flooded basement",
            category_id=category.id,
            reported_by=reported_by or uuid.uuid4(),
            latitude=31.77,
            longitude=35.21,
            status=status,
        ))
        if status == IncidentStatus.VERIFIED:
            await self._add(IncidentVerification(
                incident_id=incident.id,
                verified_by=uuid.uuid4(),
                decision=VerificationDecision.VERIFIED,
            ))
        return incident


@pytest.fixture()
def seed(session_maker):
    return Seed(session_maker)


@pytest.fixture()
def dispatch(session, seed, admin):
    """Create a mission on a fresh VERIFIED incident with an approved leader."""
    async def _dispatch(leader=None, member_ids=()):
        leader = leader or await seed.approved_volunteer()
        incident = await seed.incident(IncidentStatus.VERIFIED)
        mission = await MissionService(session).create_mission(
            admin,
            MissionCreate(incident_id=incident.id, leader_id=leader.user_id, member_ids=list(member_ids)),
        )
        return mission, leader

    return _dispatch
