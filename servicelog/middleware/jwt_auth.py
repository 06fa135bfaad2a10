"""
JWT Auth Middleware — Parses JWT from Authorization header, sets g.jwt_*.

Every ``/api/v1/`` request except the skip list must carry
``Authorization: Bearer <token>``; a missing, expired or malformed token is
answered 401 before any route runs.

Sets:
    g.jwt_user_id          — actor id (int)
    g.jwt_organization_id  — organization the token was issued for (int)
    g.jwt_role             — "peer" | "supervisor" (validated downstream)

Chain order:
  jwt_auth.py  →  actor_context.py  →  route handler
"""

import logging

import jwt as pyjwt
from flask import g, request

from servicelog.services.jwt_service import decode_access_token
from servicelog.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_organization_id = None
        g.jwt_role = None

        path = request.path
        if not path.startswith("/api/v1/") or request.method == "OPTIONS":
            return None
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return None

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return api_error(E.UNAUTHORIZED, "Authentication required")

        token = auth_header[7:]  # Strip "Bearer "

        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            return api_error(E.UNAUTHORIZED, "Token has expired")
        except pyjwt.InvalidTokenError as exc:
            logger.info("Rejected bearer token: %s", exc,
                        extra={"path": path, "request_id": getattr(g, "request_id", None)})
            return api_error(E.UNAUTHORIZED, "Invalid token")

        g.jwt_user_id = payload["sub"]
        g.jwt_organization_id = payload["organization_id"]
        g.jwt_role = payload.get("role")
        return None
