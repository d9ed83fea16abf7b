"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in eapproval/__init__.py with no default
limits; this module applies granular limits per route group.

Usage:
    from eapproval.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Blueprints whose endpoints mutate approval state
_WRITE_BLUEPRINTS = ("approval", "auto_approval")

# Administrative configuration surfaces
_ADMIN_BLUEPRINTS = ("category", "route_template")

ADMIN_LIMIT = "120/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Approval submit/decide/cancel: APPROVAL_WRITE_LIMIT (60/minute)
        - Category / template admin:     120/minute

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    write_limit = app.config.get("APPROVAL_WRITE_LIMIT", "60/minute")
    for bp_name in _WRITE_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(write_limit)(bp)

    for bp_name in _ADMIN_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(ADMIN_LIMIT)(bp)

    app.logger.info("Rate limiter configured: approvals=%s, admin=%s",
                    write_limit, ADMIN_LIMIT)
