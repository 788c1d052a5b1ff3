"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in template_engine/__init__.py with no
default limits; this module applies granular limits per route category.

Usage:
    from template_engine.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "120/minute"
WRITE_METHODS = ["POST", "PUT", "DELETE"]
DUPLICATE_LIMIT = "10/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Template writes:      120/minute  (POST/PUT/DELETE; reads unlimited)
        - Template duplication: 10/minute  (deep copy of a whole template)
        - Health check:         exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("templates")
    if bp:
        limiter.limit(WRITE_LIMIT, methods=WRITE_METHODS)(bp)

    duplicate_view = app.view_functions.get("templates.duplicate_template")
    if duplicate_view:
        app.view_functions["templates.duplicate_template"] = limiter.limit(DUPLICATE_LIMIT)(duplicate_view)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — template writes: %s, duplicate: %s",
        WRITE_LIMIT, DUPLICATE_LIMIT,
    )
