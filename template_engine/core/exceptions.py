"""
Engine-wide exception hierarchy.

Services raise only these types; the template blueprint registers one
handler per type and maps it to a consistent HTTP status + error code.

Usage:
    from template_engine.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="TemplatePhase", resource_id=42)
    raise CycleError("Task 7 is a descendant of task 3", details={"task_id": 3})
"""


class NotFoundError(Exception):
    """Raised when a node, owner or scope does not exist or is archived.

    Args:
        resource: Human-readable model name (e.g. "PhaseStep").
        resource_id: The PK that was looked up.
        reason: Optional suffix, e.g. "archived".
    """

    code = "ERR_NOT_FOUND"

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        reason: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.reason = reason
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class InvalidTargetError(NotFoundError):
    """Copy target step/phase is missing or archived."""

    code = "ERR_INVALID_TARGET"


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional structured breakdown for API responses.
    """

    code = "ERR_VALIDATION_INVALID"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class SelfReferenceError(ValidationError):
    """A task was proposed as its own parent."""

    code = "ERR_SELF_REFERENCE"


class CycleError(ValidationError):
    """The proposed parent is a descendant of the child."""

    code = "ERR_CYCLE"


class OutOfOrderError(ValidationError):
    """The proposed parent is positioned after the child in the workflow."""

    code = "ERR_OUT_OF_ORDER"


class TooLargeError(ValidationError):
    """Template exceeds the duplication ceiling; nothing was written."""

    code = "ERR_TOO_LARGE"


class ConflictError(Exception):
    """Raised when an operation would violate a uniqueness rule.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    code = "ERR_CONFLICT_DUPLICATE"

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class DataIntegrityError(Exception):
    """Stored data is already corrupt (e.g. a parent cycle, stuck staging orders).

    Never silently repaired by the code that detects it. Maps to HTTP 500.
    """

    code = "ERR_INTEGRITY"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)
