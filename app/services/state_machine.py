"""
Lifecycle adjacency tables.

Each state machine is a plain mapping from the current status to the set of
statuses it may move to. Services consult these tables before every write.
"""

from typing import Dict, FrozenSet, Mapping, Optional, TypeVar

from app.core.exceptions import InvalidMissionTransitionError, InvalidTransitionError
from app.models.database import ApplicationStatus, IncidentStatus, MissionStatus

S = TypeVar("S")

INCIDENT_TRANSITIONS: Dict[IncidentStatus, FrozenSet[IncidentStatus]] = {
    IncidentStatus.REPORTED: frozenset({
        IncidentStatus.AWAITING_VERIFICATION,
        IncidentStatus.CLOSED,
    }),
    IncidentStatus.AWAITING_VERIFICATION: frozenset({
        IncidentStatus.VERIFIED,
        IncidentStatus.UNREACHABLE,
        IncidentStatus.FALSE_REPORT,
    }),
    IncidentStatus.VERIFIED: frozenset({
        IncidentStatus.RESOLVED,
        IncidentStatus.CLOSED,
    }),
    IncidentStatus.UNREACHABLE: frozenset({
        IncidentStatus.AWAITING_VERIFICATION,
        IncidentStatus.CLOSED,
    }),
    IncidentStatus.FALSE_REPORT: frozenset({IncidentStatus.CLOSED}),
    IncidentStatus.RESOLVED: frozenset({IncidentStatus.CLOSED}),
    IncidentStatus.CLOSED: frozenset(),
}

# Reporter-initiated close is only allowed before a response is under way
REPORTER_CLOSABLE_STATUSES: FrozenSet[IncidentStatus] = frozenset({
    IncidentStatus.REPORTED,
    IncidentStatus.AWAITING_VERIFICATION,
    IncidentStatus.VERIFIED,
})

VERIFIABLE_STATUSES: FrozenSet[IncidentStatus] = frozenset({
    IncidentStatus.REPORTED,
    IncidentStatus.AWAITING_VERIFICATION,
})

MISSION_SEQUENCE = (
    MissionStatus.ASSIGNED,
    MissionStatus.ACCEPTED,
    MissionStatus.EN_ROUTE,
    MissionStatus.ON_SITE,
    MissionStatus.COMPLETED,
)

MISSION_TRANSITIONS: Dict[MissionStatus, FrozenSet[MissionStatus]] = {
    current: frozenset({following})
    for current, following in zip(MISSION_SEQUENCE, MISSION_SEQUENCE[1:])
}
MISSION_TRANSITIONS[MissionStatus.COMPLETED] = frozenset()

APPLICATION_TRANSITIONS: Dict[ApplicationStatus, FrozenSet[ApplicationStatus]] = {
    ApplicationStatus.PENDING: frozenset({
        ApplicationStatus.APPROVED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.WITHDRAWN,
    }),
    ApplicationStatus.APPROVED: frozenset(),
    ApplicationStatus.REJECTED: frozenset(),
    ApplicationStatus.WITHDRAWN: frozenset(),
}


def can_transition(table: Mapping[S, FrozenSet[S]], current: S, target: S) -> bool:
    return target in table.get(current, frozenset())


def is_terminal(table: Mapping[S, FrozenSet[S]], status: S) -> bool:
    return not table.get(status)


def validate_incident_transition(current: IncidentStatus, target: IncidentStatus) -> None:
    if not can_transition(INCIDENT_TRANSITIONS, current, target):
        raise InvalidTransitionError("incident", current.value, target.value)


def validate_mission_transition(current: MissionStatus, target: MissionStatus) -> None:
    if not can_transition(MISSION_TRANSITIONS, current, target):
        raise InvalidMissionTransitionError(current.value, target.value)


def validate_application_transition(current: ApplicationStatus, target: ApplicationStatus) -> None:
    if not can_transition(APPLICATION_TRANSITIONS, current, target):
        raise InvalidTransitionError("application", current.value, target.value)


def next_mission_status(current: MissionStatus) -> Optional[MissionStatus]:
    """Immediate successor in the mission chain, None once COMPLETED."""
    allowed = MISSION_TRANSITIONS.get(current)
    return next(iter(allowed)) if allowed else None
