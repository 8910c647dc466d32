"""
JWT Service: identity token generation and verification.

Tokens are issued by the session provider; the planner only verifies them.
``generate_access_token`` exists for the seed command and tests.

Access token:  15 minutes (configurable via JWT_ACCESS_EXPIRES)
Algorithm:     HS256

Token payload:
{
    "sub": "<user_id>",
    "role": "CONSULTANT" | "PRODUCT_MANAGER" | "GROWTH_TEAM",
    "type": "access",
    "iat": <issued_at>,
    "exp": <expires_at>,
    "jti": <unique_id>
}
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

from planner.models.auth import GLOBAL_ROLES


# ─── Defaults ────────────────────────────────────────────────
DEFAULT_ACCESS_EXPIRES = 900       # 15 minutes
ALGORITHM = "HS256"


def _get_secret():
    """Get the JWT secret key from app config."""
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def _get_access_expires():
    return current_app.config.get("JWT_ACCESS_EXPIRES", DEFAULT_ACCESS_EXPIRES)


# ═══════════════════════════════════════════════════════════════
# Token Generation
# ═══════════════════════════════════════════════════════════════
def generate_access_token(user_id: int, role: str, expires_in: int | None = None) -> str:
    """Generate a short-lived access token carrying (user_id, role)."""
    now = datetime.now(timezone.utc)
    seconds = _get_access_expires() if expires_in is None else expires_in
    payload = {
        # PyJWT >= 2.10 requires a string subject
        "sub": str(user_id),
        "role": role,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(seconds=seconds),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, _get_secret(), algorithm=ALGORITHM)


# ═══════════════════════════════════════════════════════════════
# Token Verification
# ═══════════════════════════════════════════════════════════════
def decode_access_token(token: str) -> dict:
    """
    Decode and verify an access token.

    Returns the payload with ``sub`` converted back to int.
    Raises jwt.exceptions on failure (ExpiredSignatureError, InvalidTokenError, etc.)
    """
    payload = jwt.decode(
        token, _get_secret(), algorithms=[ALGORITHM], options={"require": ["sub", "exp"]},
    )

    if payload.get("type") != "access":
        raise jwt.InvalidTokenError(f"Expected access token, got {payload.get('type')}")
    if payload.get("role") not in GLOBAL_ROLES:
        raise jwt.InvalidTokenError(f"Unknown role claim: {payload.get('role')!r}")
    try:
        payload["sub"] = int(payload["sub"])
    except (TypeError, ValueError):
        raise jwt.InvalidTokenError("Subject claim is not a user id")
    return payload
