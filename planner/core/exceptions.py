"""
Planner exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere. None of them is retried
automatically: a caller that hits one must re-read state and re-submit.

Usage:
    from planner.core.exceptions import NotFoundError, InvalidStateError

    raise NotFoundError(resource="PhaseAllocation", resource_id=42)
    raise InvalidStateError("PhaseAllocation", 42, current="APPROVED", action="approve")
"""


class NotFoundError(Exception):
    """Raised when a referenced phase, allocation or request does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Phase", "HourChangeRequest").
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
    """Raised when well-formed input violates a business rule (e.g. hours <= 0).

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a uniqueness invariant.

    Args:
        resource: Model name.
        field: The unique key that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class DuplicateAllocationError(ConflictError):
    """A non-rejected phase allocation already exists for (consultant, phase)."""

    def __init__(self, consultant_id: int, phase_id: int) -> None:
        self.consultant_id = consultant_id
        self.phase_id = phase_id
        super().__init__("PhaseAllocation", "consultant_id,phase_id", f"{consultant_id},{phase_id}")
        self.args = (
            f"Consultant {consultant_id} already has an active allocation on phase {phase_id}",
        )


class DuplicatePendingRequestError(ConflictError):
    """The target allocation already has an outstanding hour change request."""

    def __init__(self, target_key: str, pending_request_id: int | None = None) -> None:
        self.target_key = target_key
        self.pending_request_id = pending_request_id
        super().__init__("HourChangeRequest", "target", target_key)
        self.args = (
            f"A pending hour change request already exists for {target_key}",
        )


class NotAuthorizedError(Exception):
    """The actor lacks the role or project membership required for an action."""

    def __init__(self, user_id: int | None, action: str, reason: str | None = None) -> None:
        self.user_id = user_id
        self.action = action
        msg = f"User {user_id} is not allowed to {action}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InvalidStateError(Exception):
    """A transition was attempted from a status that does not permit it.

    Also raised for "already decided" races: the compare-and-set update found
    no row in the expected status.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | None,
        *,
        current: str | None,
        action: str,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.current_status = current
        self.action = action
        super().__init__(f"Cannot {action} {resource} {resource_id} (status={current})")


class PhaseLockedError(Exception):
    """An edit was attempted on a phase whose end date has passed.

    ``message`` is the user-facing lock explanation (includes elapsed days).
    """

    def __init__(self, phase_id: int, message: str, days_past: int | None = None) -> None:
        self.phase_id = phase_id
        self.days_past = days_past
        super().__init__(message)


class AuthenticationRequiredError(Exception):
    """No valid bearer token was presented on a route that needs an identity."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)
