import uuid

import pytest

from app.core.exceptions import (
    ApplicationAlreadyActiveError,
    ConflictError,
    ErrorKind,
    IncidentNotFoundError,
    IncidentNotVerifiedError,
    InvalidMissionTransitionError,
    MissionAlreadyActiveError,
    NotAnApprovedVolunteerError,
    PermissionDeniedError,
    RescueDispatchException,
    ReportAlreadyExistsError,
    ResponderUnavailableError,
    TransitionNotAuthorizedError,
    ValidationError,
    VolunteerProfileNotFoundError,
    format_exception_for_logging,
    is_retryable_error,
)


@pytest.mark.parametrize("exc,kind,status_code", [
    (IncidentNotFoundError(uuid.uuid4()), ErrorKind.NOT_FOUND, 404),
    (InvalidMissionTransitionError("ASSIGNED", "ON_SITE"), ErrorKind.INVALID_TRANSITION, 400),
    (TransitionNotAuthorizedError(uuid.uuid4()), ErrorKind.NOT_AUTHORIZED, 403),
    (IncidentNotVerifiedError(uuid.uuid4(), "REPORTED"), ErrorKind.PRECONDITION_FAILED, 412),
    (ReportAlreadyExistsError(uuid.uuid4()), ErrorKind.PRECONDITION_FAILED, 409),
    (NotAnApprovedVolunteerError(uuid.uuid4()), ErrorKind.PRECONDITION_FAILED, 403),
    (ResponderUnavailableError(uuid.uuid4()), ErrorKind.PRECONDITION_FAILED, 412),
    (VolunteerProfileNotFoundError(uuid.uuid4()), ErrorKind.NOT_FOUND, 404),
    (ValidationError("bad", field="title"), ErrorKind.VALIDATION_FAILED, 422),
    (ConflictError("mission", uuid.uuid4(), "ASSIGNED"), ErrorKind.CONFLICT, 409),
])
def test_kind_and_status(exc, kind, status_code):
    assert isinstance(exc, RescueDispatchException)
    assert exc.kind == kind
    assert exc.status_code == status_code


def test_to_dict_carries_details():
    exc = InvalidMissionTransitionError("ASSIGNED", "ON_SITE")
    data = exc.to_dict()
    assert data["kind"] == "invalid_transition"
    assert data["error_code"] == "INVALID_MISSION_TRANSITION"
    assert data["details"] == {
        "entity": "mission",
        "current_status": "ASSIGNED",
        "attempted_status": "ON_SITE",
    }


def test_permission_denied_details():
    exc = PermissionDeniedError("nope", required_role=["ADMIN", "VOLUNTEER"], resource="incident:1")
    assert exc.details == {"required_role": ["ADMIN", "VOLUNTEER"], "resource": "incident:1"}


def test_only_conflicts_are_retryable():
    assert is_retryable_error(ConflictError("incident", uuid.uuid4(), "REPORTED"))
    assert not is_retryable_error(ValidationError("bad"))
    assert not is_retryable_error(RuntimeError("boom"))


def test_format_exception_for_logging():
    data = format_exception_for_logging(ValidationError("bad", field="title"))
    assert data["exception_type"] == "ValidationError"
    assert data["kind"] == "validation_failed"
    assert data["details"] == {"field": "title"}

    plain = format_exception_for_logging(KeyError("x"))
    assert "kind" not in plain


def test_already_active_errors_without_known_ids():
    exc = ApplicationAlreadyActiveError()
    assert exc.message == "You already have an active application."
    assert exc.details == {}
    assert exc.status_code == 409

    incident_id = uuid.uuid4()
    assert MissionAlreadyActiveError(incident_id).details == {"incident_id": str(incident_id)}
