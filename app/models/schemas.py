"""
Pydantic models for engine payloads and API responses.
"""

import uuid
from datetime import date, datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models.database import (
    ApplicationStatus,
    IncidentStatus,
    LocationAccuracy,
    MediaType,
    MissionAction,
    MissionPriority,
    MissionRole,
    MissionStatus,
    PropertyDamage,
    VerificationDecision,
)


# =============================================================================
# Incidents
# =============================================================================

class MediaItem(BaseModel):
    """Reference to an already uploaded media file."""
    url: str = Field(..., min_length=1, max_length=1000)
    media_type: MediaType = MediaType.IMAGE


class IncidentCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    category_id: uuid.UUID
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address_text: Optional[str] = Field(None, max_length=500)
    landmark: Optional[str] = Field(None, max_length=255)
    accuracy: LocationAccuracy = LocationAccuracy.GPS
    media: List[MediaItem] = Field(default_factory=list)
    for_self: bool = True
    reporter_note: Optional[str] = Field(None, max_length=1000)

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        return v.strip()


class IncidentClose(BaseModel):
    note: str = Field(..., max_length=1000)


class IncidentStatusUpdate(BaseModel):
    status: IncidentStatus


class VerificationCreate(BaseModel):
    decision: VerificationDecision
    comment: Optional[str] = Field(None, max_length=1000)
    apply_decision: bool = Field(
        default=False,
        description="Administrators only: also move the incident to the decided status",
    )


# =============================================================================
# Missions
# =============================================================================

class AssignmentCreate(BaseModel):
    assignee_id: uuid.UUID
    # Optional here so the engine can reject a missing role with its own error
    role: Optional[MissionRole] = None


class MissionCreate(BaseModel):
    incident_id: uuid.UUID
    leader_id: Optional[uuid.UUID] = None
    agency_id: Optional[uuid.UUID] = None
    mission_type: Optional[str] = Field(None, max_length=100)
    priority: Optional[MissionPriority] = None
    member_ids: List[uuid.UUID] = Field(default_factory=list)


class TrackingPoint(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    recorded_at: Optional[datetime] = None

    @field_validator("recorded_at")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class MissionReportInput(BaseModel):
    summary: str = Field(..., min_length=1, max_length=5000)
    actions_taken: Optional[str] = Field(None, max_length=5000)
    resources_used: Optional[str] = Field(None, max_length=5000)
    casualties: int = Field(default=0, ge=0)
    property_damage: PropertyDamage = PropertyDamage.NONE


class MissionAdvance(BaseModel):
    status: MissionStatus
    note: Optional[str] = Field(None, max_length=1000)
    tracking_points: List[TrackingPoint] = Field(default_factory=list)
    report: Optional[MissionReportInput] = None


# =============================================================================
# Volunteer Applications
# =============================================================================

class CertificateInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    file_url: str = Field(..., min_length=1, max_length=1000)
    issued_by: Optional[str] = Field(None, max_length=255)
    issued_at: Optional[date] = None


class ApplicationSubmit(BaseModel):
    agency_id: uuid.UUID
    date_of_birth: date
    national_id_number: str = Field(..., min_length=1, max_length=50)
    national_id_url: str = Field(..., min_length=1, max_length=1000)
    address: str = Field(..., min_length=1)
    has_transport: bool = False
    experience: Optional[str] = None
    consent_given: bool = False
    skill_ids: List[uuid.UUID] = Field(default_factory=list)
    certificates: List[CertificateInput] = Field(default_factory=list)


class ApplicationUpdate(BaseModel):
    """Partial update of the fields sent. Lists replace the stored set; experience may be cleared with null."""
    date_of_birth: Optional[date] = None
    national_id_number: Optional[str] = Field(None, min_length=1, max_length=50)
    national_id_url: Optional[str] = Field(None, min_length=1, max_length=1000)
    address: Optional[str] = Field(None, min_length=1)
    has_transport: Optional[bool] = None
    experience: Optional[str] = None
    skill_ids: Optional[List[uuid.UUID]] = None
    certificates: Optional[List[CertificateInput]] = None


class ApplicationReview(BaseModel):
    decision: ApplicationStatus
    note: Optional[str] = Field(None, max_length=1000)


# =============================================================================
# Volunteer Availability
# =============================================================================

class AvailabilityUpdate(BaseModel):
    is_available: bool
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    @model_validator(mode="after")
    def coordinates_together(self) -> "AvailabilityUpdate":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be provided together")
        return self


# =============================================================================
# Responses
# =============================================================================

class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class MediaRead(ORMModel):
    id: uuid.UUID
    url: str
    media_type: MediaType
    created_at: datetime


class IncidentRead(ORMModel):
    id: uuid.UUID
    title: str
    description: Optional[str]
    category_id: uuid.UUID
    reported_by: uuid.UUID
    latitude: float
    longitude: float
    address_text: Optional[str]
    landmark: Optional[str]
    accuracy: LocationAccuracy
    status: IncidentStatus
    created_at: datetime
    updated_at: datetime


class VerificationRead(ORMModel):
    id: uuid.UUID
    incident_id: uuid.UUID
    verified_by: uuid.UUID
    decision: VerificationDecision
    comment: Optional[str]
    created_at: datetime


class AssignmentRead(ORMModel):
    id: uuid.UUID
    mission_id: uuid.UUID
    assigned_to: uuid.UUID
    assigned_by: uuid.UUID
    role: MissionRole


class MissionRead(ORMModel):
    id: uuid.UUID
    incident_id: uuid.UUID
    created_by: uuid.UUID
    agency_id: Optional[uuid.UUID]
    mission_type: Optional[str]
    priority: MissionPriority
    status: MissionStatus
    accepted_at: Optional[datetime]
    en_route_at: Optional[datetime]
    on_site_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: datetime


class MissionLogRead(ORMModel):
    sequence: int
    actor_id: uuid.UUID
    action: MissionAction
    note: Optional[str]
    created_at: datetime


class TrackingRead(ORMModel):
    volunteer_id: uuid.UUID
    latitude: float
    longitude: float
    recorded_at: datetime


class MissionReportRead(ORMModel):
    id: uuid.UUID
    mission_id: uuid.UUID
    summary: str
    actions_taken: Optional[str]
    resources_used: Optional[str]
    casualties: int
    property_damage: PropertyDamage
    submitted_by: uuid.UUID


class CertificateRead(ORMModel):
    name: str
    file_url: str
    issued_by: Optional[str]
    issued_at: Optional[date]


class ApplicationRead(ORMModel):
    id: uuid.UUID
    user_id: uuid.UUID
    agency_id: uuid.UUID
    status: ApplicationStatus
    date_of_birth: date
    address: str
    has_transport: bool
    experience: Optional[str]
    consent_given: bool
    submitted_at: datetime
    reviewed_by: Optional[uuid.UUID]
    review_note: Optional[str]
    reviewed_at: Optional[datetime]


class Pagination(BaseModel):
    total_records: int
    total_pages: int
    current_page: int
    per_page: int


class VolunteerProfileRead(ORMModel):
    user_id: uuid.UUID
    is_available: bool
    last_known_latitude: Optional[float]
    last_known_longitude: Optional[float]
    updated_at: datetime
