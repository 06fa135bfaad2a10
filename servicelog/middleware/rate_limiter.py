"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in servicelog/__init__.py with no default
limits; this module applies the limits per route category.

Usage:
    from servicelog.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

SERVICE_LOG_LIMIT = "120/minute"


def actor_rate_limit_key():
    """Rate limit key: acting user if authenticated, else remote IP."""
    actor = getattr(g, "actor", None)
    if actor is not None:
        return f"org:{actor.organization_id}:user:{actor.actor_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits:
        - Service log endpoints: 120/minute per acting user
        - Health check:          exempt

    Rate limiting is disabled when RATELIMIT_ENABLED is false (testing).
    """

    if not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (RATELIMIT_ENABLED=False)")
        return

    bp = app.blueprints.get("service_log")
    if bp:
        limiter.limit(SERVICE_LOG_LIMIT, key_func=actor_rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — service log: %s", SERVICE_LOG_LIMIT)
