"""
Engine-wide exception hierarchy.

Every service raises one of these types; blueprints register handlers
against them once and get consistent HTTP status codes everywhere.
Nothing in the service layer catches them — they propagate verbatim to
the caller (blueprint, CLI command or test).

Usage:
    from bpm.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ProcessTemplate", resource_id=template_id)
    raise ValidationError("Comment required for rejection")
"""


class UnauthorizedError(Exception):
    """Raised when an operation is attempted without an authenticated actor.

    Maps to HTTP 401.
    """

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class ForbiddenError(Exception):
    """Raised when the actor is known but lacks the role or assignment membership.

    Maps to HTTP 403.

    Args:
        message: Human-readable reason.
        user_id: The acting user. Logged, never returned to the client.
        action: The permission or engine operation that was refused.
    """

    def __init__(
        self,
        message: str = "Forbidden",
        user_id: str | None = None,
        action: str | None = None,
    ) -> None:
        self.user_id = user_id
        self.action = action
        super().__init__(message)


class NotFoundError(Exception):
    """Raised when a referenced template, instance, task or directory row is absent.

    Maps to HTTP 404.

    Args:
        resource: Human-readable model/entity name (e.g. "ProcessInstance").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: str | int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Examples: missing rejection comment, missing required file on approve,
    a department parent that would create a cycle.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidStateError(Exception):
    """Raised when a transition is attempted from a terminal or wrong source status.

    Maps to HTTP 409.

    Args:
        resource: Entity name ("ProcessTaskAssignment", "ProcessInstance").
        resource_id: The PK of the entity.
        action: The attempted transition (e.g. "start", "approve").
        current: The status the entity was in when the transition was refused.
    """

    def __init__(
        self,
        resource: str,
        resource_id: str | None,
        action: str,
        current: str | None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.action = action
        self.current_status = current
        super().__init__(
            f"Cannot '{action}' {resource} {resource_id} (status={current})"
        )


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique value.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class ConfigurationError(Exception):
    """Raised when an external collaborator (blob store, mailer) is not configured.

    Surfaced to the caller, never silently dropped. Maps to HTTP 503.
    """


class ExternalServiceError(Exception):
    """Raised when the blob store or mail provider fails (network, non-2xx).

    Maps to HTTP 502.

    Args:
        service: Name of the collaborator ("bunny_storage", "smtp").
        message: Provider error text.
        status_code: HTTP status returned by the provider, when there was one.
    """

    def __init__(self, service: str, message: str, status_code: int | None = None) -> None:
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service}: {message}")
