"""Custom exceptions for the Daily Challenge service."""

from http import HTTPStatus
from typing import Any


class ChallengeServiceError(Exception):
    """Base exception for challenge service errors."""

    def __init__(self, message: str, error_type: str = "challenge_service_error"):
        self.message = message
        self.error_type = error_type
        super().__init__(message)


class NotFoundError(ChallengeServiceError):
    """Raised when a challenge, user or blog does not exist."""

    def __init__(self, entity: str, identifier: str, error_type: str = "not_found"):
        super().__init__(f"{entity} '{identifier}' not found", error_type)
        self.entity = entity
        self.identifier = identifier


class ChallengeNotFoundError(NotFoundError):
    """Raised when a challenge is not found."""

    def __init__(self, identifier: str):
        super().__init__("Challenge", identifier, "challenge_not_found")


class AlreadyParticipatedError(ChallengeServiceError):
    """Raised when a user submits to a challenge twice."""

    def __init__(self, challenge_id: str, user_id: str):
        super().__init__(
            f"User {user_id} has already participated in challenge {challenge_id}",
            "already_participated",
        )
        self.challenge_id = challenge_id
        self.user_id = user_id


class AlreadyDecidedError(ChallengeServiceError):
    """Raised when a winner has already been selected."""

    def __init__(self, challenge_id: str):
        super().__init__(
            f"Winner already selected for challenge {challenge_id}",
            "already_decided",
        )
        self.challenge_id = challenge_id


class NoParticipantsError(ChallengeServiceError):
    def __init__(self, challenge_id: str):
        super().__init__(
            f"No participants in challenge {challenge_id}",
            "no_participants",
        )
        self.challenge_id = challenge_id


class ParticipantNotFoundError(ChallengeServiceError):
    """Raised when a manual winner is not a (user, blog) pair of the challenge."""

    def __init__(self, challenge_id: str, user_id: str, blog_id: str):
        super().__init__(
            f"User {user_id} did not participate in challenge {challenge_id} "
            f"with blog {blog_id}",
            "participant_not_found",
        )
        self.challenge_id = challenge_id
        self.user_id = user_id
        self.blog_id = blog_id


class InvalidSelectionMethodError(ChallengeServiceError):
    def __init__(self, method: str, reason: str | None = None):
        super().__init__(
            reason or f"Unknown winner selection method '{method}'",
            "invalid_selection_method",
        )
        self.method = method


class InvalidCategoryError(ChallengeServiceError):
    def __init__(self, category: str):
        super().__init__(f"Unknown challenge category '{category}'", "invalid_category")
        self.category = category


class InvalidTimeframeError(ChallengeServiceError):
    def __init__(self, timeframe: str):
        super().__init__(
            f"Unknown timeframe '{timeframe}', expected week, month or all",
            "invalid_timeframe",
        )
        self.timeframe = timeframe


class ChallengeDateConflictError(ChallengeServiceError):
    """Raised when a challenge already exists for the requested day."""

    def __init__(self, day: str):
        super().__init__(
            f"A challenge already exists for {day}",
            "challenge_date_conflict",
        )
        self.day = day


class ChallengeClosedError(ChallengeServiceError):
    """Raised when submitting to a challenge that is no longer active."""

    def __init__(self, challenge_id: str, status: str):
        super().__init__(
            f"Challenge {challenge_id} is not accepting submissions (status: {status})",
            "challenge_closed",
        )
        self.challenge_id = challenge_id
        self.status = status


class ChallengeDisabledError(ChallengeServiceError):
    """Raised when the day's challenge exists but has been soft-disabled."""

    def __init__(self, day: str):
        super().__init__(
            f"The challenge for {day} has been disabled",
            "challenge_disabled",
        )
        self.day = day


class GenerationFailedError(ChallengeServiceError):
    """Raised inside the generator only; always recovered by the fallback table."""

    def __init__(self, reason: str):
        super().__init__(f"Challenge generation failed: {reason}", "generation_failed")
        self.reason = reason


class StoreUnavailableError(ChallengeServiceError):
    """Raised when the persistence layer cannot be reached."""

    def __init__(self, operation: str):
        super().__init__(
            f"Challenge store unavailable during {operation}",
            "store_unavailable",
        )
        self.operation = operation


ERROR_STATUS_MAP: dict[str, HTTPStatus] = {
    "not_found": HTTPStatus.NOT_FOUND,
    "challenge_not_found": HTTPStatus.NOT_FOUND,
    "already_participated": HTTPStatus.CONFLICT,
    "already_decided": HTTPStatus.CONFLICT,
    "no_participants": HTTPStatus.BAD_REQUEST,
    "participant_not_found": HTTPStatus.BAD_REQUEST,
    "invalid_selection_method": HTTPStatus.BAD_REQUEST,
    "invalid_category": HTTPStatus.BAD_REQUEST,
    "invalid_timeframe": HTTPStatus.BAD_REQUEST,
    "challenge_date_conflict": HTTPStatus.CONFLICT,
    "challenge_closed": HTTPStatus.BAD_REQUEST,
    "challenge_disabled": HTTPStatus.NOT_FOUND,
    "generation_failed": HTTPStatus.INTERNAL_SERVER_ERROR,
    "store_unavailable": HTTPStatus.SERVICE_UNAVAILABLE,
    "challenge_service_error": HTTPStatus.INTERNAL_SERVER_ERROR,
}


def error_payload(error: ChallengeServiceError) -> dict[str, Any]:
    """Render a ChallengeServiceError as a problem-details body."""
    status = ERROR_STATUS_MAP.get(error.error_type, HTTPStatus.INTERNAL_SERVER_ERROR)
    return {
        "type": f"/errors/{error.error_type}",
        "title": error.error_type.replace("_", " ").title(),
        "status": int(status),
        "detail": error.message,
    }


# ---------------------------------------------------------------------------
# Repository layer
# ---------------------------------------------------------------------------


class RepositoryError(Exception):
    """Base exception for challenge repository errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class DuplicateEntityError(RepositoryError):
    """Raised when an insert hits a uniqueness constraint."""

    def __init__(self, entity_type: str, constraint: str | None = None) -> None:
        message = f"Duplicate {entity_type}"
        details: dict[str, Any] = {"entity_type": entity_type}
        if constraint:
            message = f"{message} violates '{constraint}'"
            details["constraint"] = constraint
        super().__init__(message, details)
        self.entity_type = entity_type
        self.constraint = constraint


class ReferenceNotFoundError(RepositoryError):
    """Raised when a write points at a user, blog or challenge that does not exist."""

    def __init__(self, entity_type: str, constraint: str | None = None) -> None:
        details: dict[str, Any] = {"entity_type": entity_type}
        if constraint:
            details["constraint"] = constraint
        super().__init__(f"{entity_type} references a missing row", details)
        self.entity_type = entity_type
        self.constraint = constraint
