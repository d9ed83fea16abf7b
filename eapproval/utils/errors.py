"""Standardised API error responses.

Usage
-----
    from eapproval.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Route template not found")
    return api_error(E.VALIDATION_REQUIRED, "category_id is required")
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention: ERR_ prefix for every application error.
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_PAYLOAD = "ERR_VALIDATION_PAYLOAD"
    INVARIANT = "ERR_ROUTE_INVARIANT"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"
    TEMPLATE_NOT_FOUND = "ERR_TEMPLATE_NOT_FOUND"

    # Route resolution – HTTP 422
    RESOLUTION = "ERR_RESOLUTION"
    TEMPLATE_INACTIVE = "ERR_TEMPLATE_INACTIVE"
    NO_APPROVER = "ERR_NO_APPROVER_RESOLVED"
    HIERARCHY_CYCLE = "ERR_HIERARCHY_CYCLE"

    # Conflict / duplicate / sequencing – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    INSTANCE_NOT_PENDING = "ERR_INSTANCE_NOT_PENDING"
    STAGE_NOT_CURRENT = "ERR_STAGE_NOT_CURRENT"
    OUT_OF_SEQUENCE = "ERR_OUT_OF_SEQUENCE"
    ALREADY_DECIDED = "ERR_ALREADY_DECIDED"
    VERSION_CONFLICT = "ERR_VERSION_CONFLICT"
    TEMPLATE_IN_USE = "ERR_TEMPLATE_IN_USE"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"
    APPROVER_NOT_AUTHORIZED = "ERR_APPROVER_NOT_AUTHORIZED"
    NOT_REQUESTER = "ERR_NOT_REQUESTER"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


_STATUS_GROUPS: dict[int, tuple[str, ...]] = {
    400: (E.VALIDATION_REQUIRED,),
    403: (E.FORBIDDEN, E.APPROVER_NOT_AUTHORIZED, E.NOT_REQUESTER),
    404: (E.NOT_FOUND, E.TEMPLATE_NOT_FOUND),
    409: (
        E.CONFLICT_DUPLICATE, E.CONFLICT_STATE, E.INSTANCE_NOT_PENDING,
        E.STAGE_NOT_CURRENT, E.OUT_OF_SEQUENCE, E.ALREADY_DECIDED,
        E.VERSION_CONFLICT, E.TEMPLATE_IN_USE,
    ),
    422: (
        E.VALIDATION_INVALID, E.VALIDATION_PAYLOAD, E.INVARIANT, E.RESOLUTION,
        E.TEMPLATE_INACTIVE, E.NO_APPROVER, E.HIERARCHY_CYCLE,
    ),
    500: (E.DATABASE, E.INTERNAL),
}

HTTP_STATUS: dict[str, int] = {
    code: status for status, codes in _STATUS_GROUPS.items() for code in codes
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """``(jsonify({"error", "code", "details"?}), status)`` for a Flask view.

    The status comes from ``HTTP_STATUS`` unless overridden; unknown codes
    fall back to 400.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or HTTP_STATUS.get(code, 400)


def engine_error_response(error):
    """Render an ``EngineError`` using its own code and details."""
    return api_error(error.code, str(error), details=getattr(error, "details", None))
