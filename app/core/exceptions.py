"""
Engine-wide exception hierarchy.

Services raise these types; blueprints register handlers against them
once (see ``app.utils.errors.register_service_error_handlers``) and get
consistent HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ApprovalRequest", resource_id=42)
    raise ConflictError("Approval already in progress for PO/PO-7")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist (or is not usable).

    Maps to HTTP 404.

    Args:
        resource: Human-readable model/entity name (e.g. "ApprovalRequest", "User").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint) — this
    exception signals that the data was well-formed but violated a business
    rule (e.g. delegating to oneself, end date before start date).

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation clashes with current state.

    Covers duplicates (an in-progress request already exists for the
    document), illegal transitions (acting on a terminal request) and
    lost optimistic-concurrency races.

    Maps to HTTP 409.
    """

    def __init__(self, message: str, resource: str | None = None) -> None:
        self.resource = resource
        super().__init__(message)


class AuthorizationError(Exception):
    """Raised when the actor is known but not allowed to perform the action.

    Maps to HTTP 403.
    """


class ConfigurationError(Exception):
    """Raised when approval policy data cannot route a document.

    No matching matrix rule, or a rule whose role nobody holds. Submissions
    are never auto-approved in this case.

    Maps to HTTP 422.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)
