"""
Actor Context Middleware — Builds the acting identity for API requests.

When a JWT-authenticated request arrives:
  1. g.jwt_organization_id / g.jwt_role are already set by jwt_auth
  2. This middleware verifies the organization exists and is active
  3. Validates the role (peer | supervisor)
  4. Sets g.organization and g.actor (ActorContext) for the route handler

Routes pass g.actor and g.actor.organization_id explicitly into the
services; nothing below the blueprint reads ``g``.  The organization id is
never taken from the request body or query string.

Chain order:
  jwt_auth.py  →  actor_context.py  →  route handler
"""

import logging

from flask import g, request

from servicelog.core.actor import ACTOR_ROLES, ActorContext
from servicelog.models import db
from servicelog.models.organization import Organization
from servicelog.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def init_actor_context(app):
    """Register actor context middleware as a before_request hook."""

    @app.before_request
    def _actor_context():
        g.organization = None
        g.actor = None

        organization_id = getattr(g, "jwt_organization_id", None)
        if organization_id is None:
            return None  # Unauthenticated path; jwt_auth already decided

        org = db.session.get(Organization, organization_id)
        if org is None:
            logger.warning("JWT organization_id %s not found in DB", organization_id,
                           extra={"organization_id": organization_id, "path": request.path})
            return api_error(E.FORBIDDEN, "Organization not found")
        if not org.is_active:
            logger.warning("JWT organization_id %s is deactivated", organization_id,
                           extra={"organization_id": organization_id, "path": request.path})
            return api_error(E.FORBIDDEN, "Organization account is deactivated")

        role = getattr(g, "jwt_role", None)
        if role not in ACTOR_ROLES:
            logger.warning("Unsupported role %r for user %s", role, g.jwt_user_id,
                           extra={"organization_id": organization_id, "actor_id": g.jwt_user_id})
            return api_error(E.FORBIDDEN, "Role is not permitted to use the service log")

        g.organization = org
        g.actor = ActorContext(
            actor_id=g.jwt_user_id,
            organization_id=organization_id,
            role=role,
        )
        return None

    logger.info("Actor context middleware installed")
