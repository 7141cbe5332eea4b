"""
Rate limiting configuration.

Applies per-blueprint limits using Flask-Limiter. The Limiter instance is
created in compliance_approvals/__init__.py with no default limits; this
module applies granular limits per route category.

Usage:
    from compliance_approvals.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

APPROVAL_LIMIT = "120/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Approval API:  APPROVAL_RATE_LIMIT config (default 120/minute)
        - Health probes: exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    approval_limit = app.config.get("APPROVAL_RATE_LIMIT") or APPROVAL_LIMIT
    bp = app.blueprints.get("approval")
    if bp:
        limiter.limit(approval_limit)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: approval=%s, health exempt", approval_limit)
