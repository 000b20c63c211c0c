"""
Custom exception classes for the Rescue Dispatch engine.

Every engine failure is a RescueDispatchException carrying a closed ErrorKind,
a machine-readable error code, a human message and an HTTP status hint, so the
boundary layer can map errors to responses without the engine knowing about
transport.
"""

import enum
from typing import Any, Dict, Iterable, Optional


class ErrorKind(str, enum.Enum):
    """Closed taxonomy of engine failures."""
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    NOT_AUTHORIZED = "not_authorized"
    PRECONDITION_FAILED = "precondition_failed"
    VALIDATION_FAILED = "validation_failed"
    CONFLICT = "conflict"


class RescueDispatchException(Exception):
    """Base exception class for all Rescue Dispatch exceptions."""

    kind: ErrorKind = ErrorKind.PRECONDITION_FAILED
    default_status_code: int = 400

    def __init__(
        self,
        message: str = "An error occurred in Rescue Dispatch",
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.error_code = error_code or "ENGINE_ERROR"
        self.details = details or {}
        self.status_code = status_code or self.default_status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Not Found
# =============================================================================

class NotFoundError(RescueDispatchException):
    """Raised when a requested entity id does not resolve."""

    kind = ErrorKind.NOT_FOUND
    default_status_code = 404

    def __init__(
        self,
        resource: str,
        identifier: Optional[Any] = None,
        message: Optional[str] = None,
        error_code: str = "RESOURCE_NOT_FOUND",
    ):
        if message is None:
            message = f"{resource} not found"
            if identifier:
                message += f" (ID: {identifier})"
        super().__init__(
            message=message,
            error_code=error_code,
            details={
                "resource": resource,
                "identifier": str(identifier) if identifier is not None else None,
            },
        )


class IncidentNotFoundError(NotFoundError):
    def __init__(self, incident_id: Any):
        super().__init__(
            "Incident",
            incident_id,
            message="The requested incident could not be found.",
            error_code="INCIDENT_NOT_FOUND",
        )


class MissionNotFoundError(NotFoundError):
    def __init__(self, mission_id: Any):
        super().__init__(
            "Mission",
            mission_id,
            message="The requested mission could not be found.",
            error_code="MISSION_NOT_FOUND",
        )


class CategoryNotFoundError(NotFoundError):
    def __init__(self, category_id: Any):
        super().__init__(
            "IncidentCategory",
            category_id,
            message="The selected incident category does not exist.",
            error_code="CATEGORY_NOT_FOUND",
        )


class AgencyNotFoundError(NotFoundError):
    def __init__(self, agency_id: Any):
        super().__init__(
            "Agency",
            agency_id,
            message="The selected agency could not be found.",
            error_code="AGENCY_NOT_FOUND",
        )


class ApplicationNotFoundError(NotFoundError):
    def __init__(self, application_id: Any):
        super().__init__(
            "VolunteerApplication",
            application_id,
            message="The requested application could not be found.",
            error_code="APPLICATION_NOT_FOUND",
        )


class VolunteerProfileNotFoundError(NotFoundError):
    def __init__(self, user_id: Any):
        super().__init__(
            "VolunteerProfile",
            user_id,
            message="No volunteer profile exists for this user.",
            error_code="VOLUNTEER_PROFILE_NOT_FOUND",
        )


# =============================================================================
# Invalid Transitions
# =============================================================================

class InvalidTransitionError(RescueDispatchException):
    """Raised when a status edge is not in the adjacency table."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(
        self,
        entity: str,
        current_status: str,
        attempted_status: str,
        message: Optional[str] = None,
        error_code: str = "INVALID_STATUS_TRANSITION",
    ):
        if message is None:
            message = f"Cannot transition {entity} from {current_status} to {attempted_status}."
        super().__init__(
            message=message,
            error_code=error_code,
            details={
                "entity": entity,
                "current_status": current_status,
                "attempted_status": attempted_status,
            },
        )


class InvalidMissionTransitionError(InvalidTransitionError):
    def __init__(self, current_status: str, attempted_status: str):
        super().__init__(
            "mission",
            current_status,
            attempted_status,
            error_code="INVALID_MISSION_TRANSITION",
        )


class CannotWithdrawError(InvalidTransitionError):
    def __init__(self, current_status: str):
        super().__init__(
            "application",
            current_status,
            "WITHDRAWN",
            message=(
                "Applications cannot be withdrawn now. "
                "Contact the agency directly for your application."
            ),
            error_code="CANNOT_WITHDRAW_AFTER_REVIEW",
        )


# =============================================================================
# Authorization
# =============================================================================

class PermissionDeniedError(RescueDispatchException):
    """Raised when the actor lacks the role or ownership an operation needs."""

    kind = ErrorKind.NOT_AUTHORIZED
    default_status_code = 403

    def __init__(
        self,
        message: str = "Permission denied",
        required_role: Optional[Iterable[str]] = None,
        resource: Optional[str] = None,
        error_code: str = "PERMISSION_DENIED",
    ):
        details: Dict[str, Any] = {}
        if required_role:
            details["required_role"] = sorted(str(r) for r in required_role)
        if resource:
            details["resource"] = resource
        super().__init__(message=message, error_code=error_code, details=details)


class TransitionNotAuthorizedError(PermissionDeniedError):
    def __init__(self, mission_id: Any):
        super().__init__(
            message="Only the mission leader or an administrator can change this mission.",
            resource=f"mission:{mission_id}",
            error_code="TRANSITION_NOT_AUTHORIZED",
        )


# =============================================================================
# Preconditions
# =============================================================================

class PreconditionFailedError(RescueDispatchException):
    """Raised when a dependent record is not in the state an operation requires."""

    kind = ErrorKind.PRECONDITION_FAILED
    default_status_code = 412


class CategoryInactiveError(PreconditionFailedError):
    def __init__(self, category_id: Any):
        super().__init__(
            message="The selected incident category is no longer active.",
            error_code="CATEGORY_INACTIVE",
            details={"category_id": str(category_id)},
        )


class IncidentNotVerifiedError(PreconditionFailedError):
    def __init__(self, incident_id: Any, current_status: str):
        super().__init__(
            message="Missions can only be created for VERIFIED incidents.",
            error_code="INCIDENT_NOT_VERIFIED",
            details={"incident_id": str(incident_id), "current_status": current_status},
        )


class IncidentNotVerifiableError(PreconditionFailedError):
    def __init__(self, incident_id: Any, current_status: str):
        super().__init__(
            message=f"Incidents in {current_status} cannot receive verifications.",
            error_code="INCIDENT_NOT_VERIFIABLE",
            details={"incident_id": str(incident_id), "current_status": current_status},
        )


class VerificationRequiredError(PreconditionFailedError):
    def __init__(self, incident_id: Any, target_status: str):
        super().__init__(
            message=f"A {target_status} verification must be recorded before this transition.",
            error_code="VERIFICATION_REQUIRED",
            details={"incident_id": str(incident_id), "target_status": target_status},
        )


class LeaderRequiredError(PreconditionFailedError):
    def __init__(self):
        super().__init__(
            message="A mission leader is required.",
            error_code="LEADER_REQUIRED",
        )


class AssignmentRoleRequiredError(PreconditionFailedError):
    def __init__(self, assignee_id: Any = None):
        super().__init__(
            message="Every mission assignment must declare a role.",
            error_code="ASSIGNMENT_ROLE_REQUIRED",
            details={"assignee_id": str(assignee_id) if assignee_id else None},
        )


class DuplicateAssignmentError(PreconditionFailedError):
    def __init__(self, mission_id: Any, assignee_id: Any, message: Optional[str] = None):
        super().__init__(
            message=message or "This responder is already assigned to the mission.",
            error_code="DUPLICATE_ASSIGNMENT",
            details={"mission_id": str(mission_id), "assignee_id": str(assignee_id)},
        )


class MissionAlreadyActiveError(PreconditionFailedError):
    def __init__(self, incident_id: Any, mission_id: Any = None):
        details = {"incident_id": str(incident_id)}
        if mission_id is not None:
            details["mission_id"] = str(mission_id)
        super().__init__(
            message="This incident already has an active mission.",
            error_code="MISSION_ALREADY_ACTIVE",
            details=details,
        )


class MissionNotEnRouteError(PreconditionFailedError):
    def __init__(self, mission_id: Any, current_status: str):
        super().__init__(
            message="Tracking points can only be recorded while the mission is EN_ROUTE.",
            error_code="MISSION_NOT_EN_ROUTE",
            details={"mission_id": str(mission_id), "current_status": current_status},
        )


class MissionNotCompletedError(PreconditionFailedError):
    def __init__(self, mission_id: Any, current_status: str):
        super().__init__(
            message="A report can only be filed for a mission that is on site or completed.",
            error_code="MISSION_NOT_COMPLETED",
            details={"mission_id": str(mission_id), "current_status": current_status},
        )


class ReportAlreadyExistsError(PreconditionFailedError):
    default_status_code = 409

    def __init__(self, mission_id: Any):
        super().__init__(
            message="A report has already been filed for this mission.",
            error_code="REPORT_ALREADY_EXISTS",
            details={"mission_id": str(mission_id)},
        )


class NotAnApprovedVolunteerError(PreconditionFailedError):
    default_status_code = 403

    def __init__(self, user_id: Any):
        super().__init__(
            message="Only approved volunteers can be assigned to missions.",
            error_code="NOT_AN_APPROVED_VOLUNTEER",
            details={"user_id": str(user_id)},
        )


class ApplicationNotEditableError(PreconditionFailedError):
    default_status_code = 400

    def __init__(self, current_status: str):
        super().__init__(
            message="This application can no longer be edited.",
            error_code="APPLICATION_NOT_EDITABLE",
            details={"current_status": current_status},
        )


class ApplicationAlreadyActiveError(PreconditionFailedError):
    default_status_code = 409

    def __init__(self, agency_name: Optional[str] = None, application_id: Any = None):
        if agency_name:
            message = f"You already have an active application with {agency_name}."
        else:
            message = "You already have an active application."
        details = {}
        if application_id is not None:
            details["application_id"] = str(application_id)
        super().__init__(
            message=message,
            error_code="APPLICATION_ALREADY_ACTIVE",
            details=details,
        )


class ResponderUnavailableError(PreconditionFailedError):
    def __init__(self, user_id: Any):
        super().__init__(
            message="This volunteer has marked themselves unavailable.",
            error_code="RESPONDER_UNAVAILABLE",
            details={"user_id": str(user_id)},
        )


# =============================================================================
# Validation
# =============================================================================

class ValidationError(RescueDispatchException):
    """Raised when input data fails validation."""

    kind = ErrorKind.VALIDATION_FAILED
    default_status_code = 422

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_code: str = "VALIDATION_ERROR",
    ):
        if field and details is None:
            details = {"field": field}
        super().__init__(message=message, error_code=error_code, details=details)


class InvalidSkillIdsError(ValidationError):
    def __init__(self, unknown_ids: Iterable[Any]):
        unknown = [str(i) for i in unknown_ids]
        super().__init__(
            message="One or more skill IDs are invalid.",
            details={"field": "skill_ids", "unknown_ids": unknown},
            error_code="INVALID_SKILL_IDS",
        )


# =============================================================================
# Concurrency
# =============================================================================

class ConflictError(RescueDispatchException):
    """Raised when the persisted status changed between read and write."""

    kind = ErrorKind.CONFLICT
    default_status_code = 409

    def __init__(self, entity: str, entity_id: Any, expected_status: str):
        super().__init__(
            message=f"The {entity} was modified concurrently; reload and retry.",
            error_code="CONCURRENT_MODIFICATION",
            details={
                "entity": entity,
                "entity_id": str(entity_id),
                "expected_status": expected_status,
            },
        )


# =============================================================================
# Utility functions for exception handling
# =============================================================================

def format_exception_for_logging(exc: Exception) -> Dict[str, Any]:
    """Format exception for structured logging."""
    data = {
        "exception_type": exc.__class__.__name__,
        "message": str(exc),
    }

    if isinstance(exc, RescueDispatchException):
        data["kind"] = exc.kind.value
        data["error_code"] = exc.error_code
        data["status_code"] = exc.status_code
        data["details"] = exc.details

    return data


def is_retryable_error(exc: Exception) -> bool:
    """Determine if the caller may retry the operation with fresh state."""
    return isinstance(exc, RescueDispatchException) and exc.kind == ErrorKind.CONFLICT
