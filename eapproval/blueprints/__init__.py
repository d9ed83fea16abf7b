"""
Electronic Approval Engine
Blueprint helpers shared by every API module.

tenant_id is resolved from the query string or JSON body; the acting user
comes from the ``X-User-Id`` header set by the authenticating gateway.
"""

import logging

from flask import jsonify, request

from eapproval.core.exceptions import EngineError
from eapproval.utils.errors import E, api_error, engine_error_response

logger = logging.getLogger(__name__)


class MissingContextError(Exception):
    """tenant_id or X-User-Id absent from a request that needs it."""

    def __init__(self, what: str):
        self.what = what
        super().__init__(f"{what} is required")


def tenant_id() -> int:
    """Extract tenant_id from query string or JSON body."""
    tid = request.args.get("tenant_id", type=int)
    if tid:
        return tid
    data = request.get_json(silent=True) or {}
    raw = data.get("tenant_id") if isinstance(data, dict) else None
    if isinstance(raw, int) and not isinstance(raw, bool) and raw > 0:
        return raw
    raise MissingContextError("tenant_id")


def acting_user_id() -> int:
    """Return the acting user's id from the X-User-Id header."""
    raw = request.headers.get("X-User-Id", "")
    try:
        return int(raw)
    except ValueError:
        raise MissingContextError("X-User-Id header") from None


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def register_error_handlers(bp) -> None:
    """Map engine exceptions to JSON responses for one blueprint."""

    @bp.errorhandler(EngineError)
    def _handle_engine_error(error: EngineError):
        return engine_error_response(error)

    @bp.errorhandler(MissingContextError)
    def _handle_missing_context(error: MissingContextError):
        return api_error(E.VALIDATION_REQUIRED, str(error), status=400)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        from werkzeug.exceptions import HTTPException

        if isinstance(error, HTTPException):
            return jsonify({"error": error.description}), error.code
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
