"""
Workflow Template Engine
Blueprint registry.
"""

from flask import request


def _int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (ValueError, TypeError):
        return default


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a template listing query.

    Query params:
        limit  — page size, clamped to 1..max_limit (default 200)
        offset — starting position, never negative (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    limit = min(max(_int_arg("limit", default_limit), 1), max_limit)
    offset = max(_int_arg("offset", 0), 0)
    return query.limit(limit).offset(offset).all(), total
