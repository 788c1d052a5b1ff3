"""Standardised API error responses.

Usage
-----
    from template_engine.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "PhaseStep not found")
    return api_error(E.VALIDATION_REQUIRED, "ordered_ids is required")
    return api_error(E.CYCLE, "Cycle detected", details={"task_id": 7})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    The exception classes in ``template_engine.core.exceptions`` carry the
    same strings on their ``code`` attribute.
    """

    # Malformed request – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_TYPE = "ERR_VALIDATION_TYPE"

    # Business-rule validation – HTTP 422
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    SELF_REFERENCE = "ERR_SELF_REFERENCE"
    CYCLE = "ERR_CYCLE"
    OUT_OF_ORDER = "ERR_OUT_OF_ORDER"
    TOO_LARGE = "ERR_TOO_LARGE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"
    INVALID_TARGET = "ERR_INVALID_TARGET"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    # Server – HTTP 500
    INTEGRITY = "ERR_INTEGRITY"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_TYPE: 400,
    E.VALIDATION_INVALID: 422,
    E.SELF_REFERENCE: 422,
    E.CYCLE: 422,
    E.OUT_OF_ORDER: 422,
    E.TOO_LARGE: 422,
    E.NOT_FOUND: 404,
    E.INVALID_TARGET: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.INTEGRITY: 500,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (offending ids, limits, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
