"""
JWT Auth Middleware: parses the bearer token and sets g.jwt_*.

The session provider issues the token; this hook only verifies it.

  Authorization: Bearer <token>  →  g.jwt_user_id, g.jwt_role

A missing, expired or invalid token leaves both unset; endpoints that need an
identity answer 401 through ``planner.blueprints.current_actor``.
"""

import logging

import jwt as pyjwt
from flask import g, request

from planner.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        # Clear JWT context
        g.jwt_user_id = None
        g.jwt_role = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]  # Strip "Bearer "

        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired access token", extra={"path": path})
            return
        except pyjwt.InvalidTokenError as exc:
            logger.info("Invalid access token", extra={"path": path, "reason": str(exc)})
            return

        g.jwt_user_id = payload["sub"]
        g.jwt_role = payload["role"]
