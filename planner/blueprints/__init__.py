"""
Consultant Allocation Planner
Blueprint registry and shared request helpers.
"""

from flask import abort, g, request

from planner.core.exceptions import AuthenticationRequiredError, ValidationError
from planner.services.permission import Actor


def current_actor() -> Actor:
    """
    Build the Actor from the JWT middleware context.

    Raises:
        AuthenticationRequiredError: no valid token was presented.
    """
    user_id = getattr(g, "jwt_user_id", None)
    role = getattr(g, "jwt_role", None)
    if not user_id or not role:
        raise AuthenticationRequiredError()
    return Actor(user_id=user_id, role=role)


def json_body() -> dict:
    """Request JSON object; a non-object body is a 400."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        abort(400, description="Request body must be a JSON object")
    return data


def int_field(data: dict, key: str, *, required: bool = True) -> int | None:
    """Integer id from a JSON body; booleans and non-integers are rejected."""
    value = data.get(key)
    if value is None:
        if required:
            raise ValidationError(f"{key} is required", details={key: None})
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer", details={key: value})
    return value
