"""Standardised API error responses.

Usage
-----
    from compliance_approvals.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Approval item not found")
    return api_error(E.VALIDATION_REQUIRED, "title is required")
    return api_error(exc.code, str(exc), status=exc.http_status, details=exc.details)
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Engine exceptions carry the same strings in their ``code`` attribute.
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Lifecycle conflicts – HTTP 409
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"

    # Assignment outcomes
    NO_ELIGIBLE_REVIEWERS = "ERR_NO_ELIGIBLE_REVIEWERS"
    ALREADY_ASSIGNED = "ERR_ALREADY_ASSIGNED"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.NOT_FOUND: 404,
    E.INVALID_TRANSITION: 409,
    E.NO_ELIGIBLE_REVIEWERS: 422,
    E.ALREADY_ASSIGNED: 200,
    E.FORBIDDEN: 403,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
    **extra,
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
        Extra structured payload (field errors, current assignees, etc.).
    **extra
        Additional top-level keys merged into the body (e.g. ``assigned``).

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
    body.update(extra)

    return jsonify(body), http_status
