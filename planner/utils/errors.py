"""Standardised API error responses.

Usage
-----
    from planner.utils.errors import api_error, register_error_handlers, E

    return api_error(E.NOT_FOUND, "Phase not found")
    return api_error(E.VALIDATION_REQUIRED, "hours is required")

    register_error_handlers(allocation_bp)   # typed service errors → JSON
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from planner.core.exceptions import (
    AuthenticationRequiredError,
    ConflictError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
    PhaseLockedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An unexpected error occurred. Please try again later."


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Auth – HTTP 401 / 403
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Temporal lock – HTTP 423
    PHASE_LOCKED = "ERR_PHASE_LOCKED"

    # Rate limit – HTTP 429
    RATE_LIMITED = "ERR_RATE_LIMITED"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.PHASE_LOCKED: 423,
    E.RATE_LIMITED: 429,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload.

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(bp) -> None:
    """Map the planner exception taxonomy onto a blueprint."""

    @bp.errorhandler(AuthenticationRequiredError)
    def _handle_unauthenticated(error: AuthenticationRequiredError):
        return api_error(E.UNAUTHORIZED, str(error))

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(NotAuthorizedError)
    def _handle_forbidden(error: NotAuthorizedError):
        logger.info("Forbidden", extra={"actor_id": error.user_id, "path": request.path})
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(PhaseLockedError)
    def _handle_locked(error: PhaseLockedError):
        return api_error(
            E.PHASE_LOCKED, str(error),
            details={"phase_id": error.phase_id, "days_past": error.days_past},
        )

    @bp.errorhandler(ConflictError)
    def _handle_duplicate(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})

    @bp.errorhandler(InvalidStateError)
    def _handle_state(error: InvalidStateError):
        return api_error(
            E.CONFLICT_STATE, str(error),
            details={"current_status": error.current_status, "action": error.action},
        )

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            code = E.RATE_LIMITED if error.code == 429 else E.VALIDATION_REQUIRED
            if error.code == 404:
                code = E.NOT_FOUND
            return api_error(code, error.description or error.name, status=error.code)
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, GENERIC_ERROR_MESSAGE)
