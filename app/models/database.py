"""
Database Models and ORM Setup

This module contains all database models using SQLAlchemy 2.0 with async support.
Column types are portable (PostgreSQL in production, SQLite for local runs and
tests). Every lifecycle entity carries an explicit status column that is only
ever written through compare_and_set_status().
"""

import enum
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Type

import structlog
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncAttrs, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.core.config import settings
from app.core.exceptions import ConflictError

logger = structlog.get_logger(__name__).bind(component="database")

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps (SQLite drops the offset on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# =============================================================================
# Enums for Type Safety
# =============================================================================

class UserRole(str, enum.Enum):
    """Caller roles supplied by the identity context."""
    CIVILIAN = "CIVILIAN"      # Reports incidents, applies to volunteer
    VOLUNTEER = "VOLUNTEER"    # Verifies incidents, responds to missions
    ADMIN = "ADMIN"            # Administrative transitions and reviews


class IncidentStatus(str, enum.Enum):
    """Incident lifecycle."""
    REPORTED = "REPORTED"
    AWAITING_VERIFICATION = "AWAITING_VERIFICATION"
    VERIFIED = "VERIFIED"
    UNREACHABLE = "UNREACHABLE"
    FALSE_REPORT = "FALSE_REPORT"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class LocationAccuracy(str, enum.Enum):
    GPS = "GPS"
    MANUAL = "MANUAL"
    VERIFIED = "VERIFIED"


class MediaType(str, enum.Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"


class VerificationDecision(str, enum.Enum):
    """A volunteer's judgment on an incident."""
    VERIFIED = "VERIFIED"
    UNREACHABLE = "UNREACHABLE"
    FALSE_REPORT = "FALSE_REPORT"


class MissionStatus(str, enum.Enum):
    """Mission lifecycle (strictly linear)."""
    ASSIGNED = "ASSIGNED"
    ACCEPTED = "ACCEPTED"
    EN_ROUTE = "EN_ROUTE"
    ON_SITE = "ON_SITE"
    COMPLETED = "COMPLETED"


class MissionPriority(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class MissionRole(str, enum.Enum):
    LEADER = "LEADER"
    MEMBER = "MEMBER"


class MissionAction(str, enum.Enum):
    """Mission log actions: creation plus one per status."""
    CREATED = "CREATED"
    ASSIGNED = "ASSIGNED"
    ACCEPTED = "ACCEPTED"
    EN_ROUTE = "EN_ROUTE"
    ON_SITE = "ON_SITE"
    COMPLETED = "COMPLETED"


class PropertyDamage(str, enum.Enum):
    NONE = "NONE"
    MINOR = "MINOR"
    MODERATE = "MODERATE"
    SEVERE = "SEVERE"


class ApplicationStatus(str, enum.Enum):
    """Volunteer application lifecycle."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    UPDATE_STATUS = "UPDATE_STATUS"
    CLOSE = "CLOSE"
    DELETE = "DELETE"
    VERIFY = "VERIFY"
    ASSIGN = "ASSIGN"
    TRACK = "TRACK"
    COMPLETE = "COMPLETE"
    SUBMIT = "SUBMIT"
    WITHDRAW = "WITHDRAW"
    REVIEW = "REVIEW"


class EntityType(str, enum.Enum):
    INCIDENT = "INCIDENT"
    MISSION = "MISSION"
    MISSION_REPORT = "MISSION_REPORT"
    VOLUNTEER_APPLICATION = "VOLUNTEER_APPLICATION"
    VOLUNTEER_PROFILE = "VOLUNTEER_PROFILE"


# =============================================================================
# Base Model with Common Fields
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for all database models.

    Provides async attribute access via AsyncAttrs and a shared type map.
    """

    type_annotation_map = {
        datetime: DateTime(timezone=True),
        dict: JSONType,
        Dict: JSONType,
        list: JSONType,
        List: JSONType,
    }


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        doc="Record creation timestamp"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        doc="Last update timestamp"
    )


class CreatedAtMixin:
    """Mixin for append-only rows."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        doc="Record creation timestamp"
    )


class UUIDMixin:
    """Mixin for UUID primary keys."""

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        doc="Primary key UUID"
    )


# =============================================================================
# Reference Data
# =============================================================================

class Agency(Base, UUIDMixin, TimestampMixin):
    """Responding agency that volunteers apply to and missions may belong to."""

    __tablename__ = "agencies"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    region: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class IncidentCategory(Base, UUIDMixin, TimestampMixin):
    """Incident category (medical, fire, flood...)."""

    __tablename__ = "incident_categories"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
        doc="Inactive categories reject new incidents"
    )


class Skill(Base, UUIDMixin):
    __tablename__ = "skills"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)


class VolunteerSkill(Base):
    """Skill set declared by a volunteer applicant."""

    __tablename__ = "volunteer_skills"

    volunteer_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    skill_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("skills.id", ondelete="CASCADE"),
        primary_key=True,
    )


# =============================================================================
# Incident Models
# =============================================================================

class Incident(Base, UUIDMixin, TimestampMixin):
    """
    Reported emergency event.

    Created by a reporter, mutated only through the incident state machine,
    never hard-deleted.
    """

    __tablename__ = "incidents"

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    category_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("incident_categories.id"),
        nullable=False,
    )

    reported_by: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        doc="User who reported the incident"
    )

    # Geographic information
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    address_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    landmark: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    accuracy: Mapped[LocationAccuracy] = mapped_column(
        Enum(LocationAccuracy),
        default=LocationAccuracy.GPS,
        nullable=False,
    )

    status: Mapped[IncidentStatus] = mapped_column(
        Enum(IncidentStatus),
        default=IncidentStatus.REPORTED,
        nullable=False,
        doc="Current incident status"
    )

    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="Soft-delete marker"
    )

    media: Mapped[List["IncidentMedia"]] = relationship(
        "IncidentMedia",
        back_populates="incident",
        cascade="all, delete-orphan",
        order_by="IncidentMedia.created_at",
    )

    verifications: Mapped[List["IncidentVerification"]] = relationship(
        "IncidentVerification",
        back_populates="incident",
        order_by="IncidentVerification.created_at.desc()",
    )

    __table_args__ = (
        CheckConstraint("latitude >= -90 AND latitude <= 90", name="check_incident_latitude"),
        CheckConstraint("longitude >= -180 AND longitude <= 180", name="check_incident_longitude"),
        Index("ix_incidents_status", "status"),
        Index("ix_incidents_reported_by", "reported_by"),
        Index("ix_incidents_category_id", "category_id"),
        Index("ix_incidents_created_at", "created_at"),
    )


class IncidentMedia(Base, UUIDMixin, CreatedAtMixin):
    """Media reference attached to an incident (storage is external)."""

    __tablename__ = "incident_media"

    incident_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False,
    )
    uploaded_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    media_type: Mapped[MediaType] = mapped_column(Enum(MediaType), nullable=False)

    incident: Mapped["Incident"] = relationship("Incident", back_populates="media")


class IncidentVerification(Base, UUIDMixin, CreatedAtMixin):
    """Append-only verification history of an incident."""

    __tablename__ = "incident_verifications"

    incident_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False,
    )
    verified_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    decision: Mapped[VerificationDecision] = mapped_column(
        Enum(VerificationDecision),
        nullable=False,
    )
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    incident: Mapped["Incident"] = relationship("Incident", back_populates="verifications")

    __table_args__ = (
        Index("ix_incident_verifications_incident_id", "incident_id", "created_at"),
    )


# =============================================================================
# Mission Models
# =============================================================================

class Mission(Base, UUIDMixin, TimestampMixin):
    """Dispatch record created from a verified incident."""

    __tablename__ = "missions"

    incident_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("incidents.id"),
        nullable=False,
    )
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    agency_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("agencies.id", ondelete="SET NULL"),
        nullable=True,
    )
    mission_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    priority: Mapped[MissionPriority] = mapped_column(
        Enum(MissionPriority),
        default=MissionPriority.MEDIUM,
        nullable=False,
    )
    status: Mapped[MissionStatus] = mapped_column(
        Enum(MissionStatus),
        default=MissionStatus.ASSIGNED,
        nullable=False,
    )

    # Milestones
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    en_route_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    on_site_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    assignments: Mapped[List["MissionAssignment"]] = relationship(
        "MissionAssignment",
        back_populates="mission",
        order_by="MissionAssignment.created_at",
    )

    logs: Mapped[List["MissionLog"]] = relationship(
        "MissionLog",
        back_populates="mission",
        order_by="MissionLog.sequence",
    )

    report: Mapped[Optional["MissionReport"]] = relationship(
        "MissionReport",
        back_populates="mission",
        uselist=False,
    )

    __table_args__ = (
        Index("ix_missions_incident_id", "incident_id"),
        # At most one non-completed mission per incident
        Index(
            "uq_missions_incident_active",
            "incident_id",
            unique=True,
            postgresql_where=text("status != 'COMPLETED'"),
            sqlite_where=text("status != 'COMPLETED'"),
        ),
        Index("ix_missions_status", "status"),
        Index("ix_missions_agency_id", "agency_id"),
    )


class MissionAssignment(Base, UUIDMixin, CreatedAtMixin):
    """A responder's role on a mission."""

    __tablename__ = "mission_assignments"

    mission_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("missions.id", ondelete="CASCADE"),
        nullable=False,
    )
    assigned_to: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    assigned_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    role: Mapped[MissionRole] = mapped_column(Enum(MissionRole), nullable=False)

    mission: Mapped["Mission"] = relationship("Mission", back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("mission_id", "assigned_to", name="uq_mission_assignment_responder"),
        Index(
            "uq_mission_assignment_single_leader",
            "mission_id",
            unique=True,
            postgresql_where=text("role = 'LEADER'"),
            sqlite_where=text("role = 'LEADER'"),
        ),
        Index("ix_mission_assignments_assigned_to", "assigned_to"),
    )


class MissionLog(Base, UUIDMixin, CreatedAtMixin):
    """Append-only, ordered transcript of a mission."""

    __tablename__ = "mission_logs"

    mission_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("missions.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        doc="Position of the entry in the mission transcript (1-based)"
    )
    actor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    action: Mapped[MissionAction] = mapped_column(Enum(MissionAction), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    mission: Mapped["Mission"] = relationship("Mission", back_populates="logs")

    __table_args__ = (
        UniqueConstraint("mission_id", "sequence", name="uq_mission_log_sequence"),
        CheckConstraint("sequence > 0", name="check_mission_log_sequence_positive"),
    )


class MissionTracking(Base, UUIDMixin):
    """GPS snapshot of a responder while the mission is EN_ROUTE."""

    __tablename__ = "mission_tracking"

    mission_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("missions.id", ondelete="CASCADE"),
        nullable=False,
    )
    volunteer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("latitude >= -90 AND latitude <= 90", name="check_tracking_latitude"),
        CheckConstraint("longitude >= -180 AND longitude <= 180", name="check_tracking_longitude"),
        Index("ix_mission_tracking_mission_recorded", "mission_id", "recorded_at"),
    )


class MissionReport(Base, UUIDMixin, CreatedAtMixin):
    """After-action report, one per completed mission."""

    __tablename__ = "mission_reports"

    mission_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("missions.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    actions_taken: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resources_used: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    casualties: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    property_damage: Mapped[PropertyDamage] = mapped_column(
        Enum(PropertyDamage),
        default=PropertyDamage.NONE,
        nullable=False,
    )
    submitted_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    mission: Mapped["Mission"] = relationship("Mission", back_populates="report")

    __table_args__ = (
        CheckConstraint("casualties >= 0", name="check_report_casualties_non_negative"),
    )


# =============================================================================
# Volunteer Application Models
# =============================================================================

class VolunteerApplication(Base, UUIDMixin, TimestampMixin):
    """Request by a user to join an agency as a responder."""

    __tablename__ = "volunteer_applications"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    agency_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agencies.id"),
        nullable=False,
    )
    status: Mapped[ApplicationStatus] = mapped_column(
        Enum(ApplicationStatus),
        default=ApplicationStatus.PENDING,
        nullable=False,
    )

    # Supporting documents
    date_of_birth: Mapped[date] = mapped_column(Date, nullable=False)
    national_id_number: Mapped[str] = mapped_column(String(50), nullable=False)
    national_id_url: Mapped[str] = mapped_column(String(1000), nullable=False)
    address: Mapped[str] = mapped_column(Text, nullable=False)
    has_transport: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    experience: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    consent_given: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    consent_given_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Review metadata
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    reviewed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    review_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    withdrawn_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    certificates: Mapped[List["ApplicationCertificate"]] = relationship(
        "ApplicationCertificate",
        back_populates="application",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_volunteer_applications_user_status", "user_id", "status"),
        Index(
            "uq_volunteer_applications_user_active",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'APPROVED')"),
            sqlite_where=text("status IN ('PENDING', 'APPROVED')"),
        ),
        Index("ix_volunteer_applications_agency_id", "agency_id"),
    )


class ApplicationCertificate(Base, UUIDMixin, CreatedAtMixin):
    __tablename__ = "application_certificates"

    application_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("volunteer_applications.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_url: Mapped[str] = mapped_column(String(1000), nullable=False)
    issued_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    issued_at: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    application: Mapped["VolunteerApplication"] = relationship(
        "VolunteerApplication",
        back_populates="certificates",
    )


class VolunteerProfile(Base, TimestampMixin):
    """Availability of an approved volunteer for new assignments."""

    __tablename__ = "volunteer_profiles"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_known_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_known_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


# =============================================================================
# Audit Trail
# =============================================================================

class AuditLog(Base, UUIDMixin, CreatedAtMixin):
    """
    Immutable record of who did what to which entity.

    Written inside the same transaction as the business mutation it describes.
    """

    __tablename__ = "audit_logs"

    actor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[Dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        default=dict,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
        Index("ix_audit_logs_actor_id", "actor_id"),
        Index("ix_audit_logs_created_at", "created_at"),
    )


# =============================================================================
# Database Engine and Session Management
# =============================================================================

engine = create_async_engine(
    str(settings.DATABASE_URL),
    **settings.DATABASE_ENGINE_OPTIONS,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=True,
)


async def get_db_session() -> AsyncIterator[AsyncSession]:
    """
    Get async database session.

    Provides a database session for dependency injection in FastAPI endpoints.
    """
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# =============================================================================
# Transactions and Guarded Writes
# =============================================================================

@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Scoped transaction: commit when the body finishes, roll back on any error.

    Every engine operation runs inside exactly one of these.
    """
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise


async def compare_and_set_status(
    session: AsyncSession,
    model: Type[Base],
    entity_id: uuid.UUID,
    expected: enum.Enum,
    new: enum.Enum,
    **values: Any,
):
    """
    Move an entity from `expected` to `new` status in a single conditional UPDATE.

    Zero affected rows means another transaction changed the status after it
    was read, and ConflictError is raised. Returns the reloaded entity.
    """
    stmt = (
        update(model)
        .where(model.id == entity_id, model.status == expected)
        .values(status=new, **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        logger.warning(
            "Status changed concurrently",
            entity=model.__tablename__,
            entity_id=str(entity_id),
            expected_status=expected.value,
            attempted_status=new.value,
        )
        raise ConflictError(model.__tablename__, entity_id, expected.value)

    return await session.get(model, entity_id, populate_existing=True)


# =============================================================================
# Database Initialization
# =============================================================================

async def create_tables() -> None:
    """Create all database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database_health() -> Dict[str, Any]:
    """Check database connectivity."""
    try:
        async with async_session_maker() as session:
            result = await session.execute(text("SELECT 1"))
            return {
                "status": "healthy",
                "test_query": result.scalar() == 1,
            }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }


__all__ = [
    "Base",
    "Agency",
    "IncidentCategory",
    "Skill",
    "VolunteerSkill",
    "Incident",
    "IncidentMedia",
    "IncidentVerification",
    "Mission",
    "MissionAssignment",
    "MissionLog",
    "MissionTracking",
    "MissionReport",
    "VolunteerApplication",
    "ApplicationCertificate",
    "VolunteerProfile",
    "AuditLog",
    "engine",
    "async_session_maker",
    "get_db_session",
    "transaction",
    "compare_and_set_status",
    "create_tables",
    "check_database_health",
]
