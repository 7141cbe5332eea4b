"""Request parsing helpers shared by blueprints."""

from __future__ import annotations

from datetime import datetime, timezone

from flask import request

from compliance_approvals.core.exceptions import ValidationError


def paginate_list(rows, default_limit=50, max_limit=500):
    """Apply limit/offset query params to an already materialised list.

    Returns:
        (page, total_count)
    """
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return rows[offset:offset + limit], len(rows)


def parse_datetime(value, field_name):
    """Parse an ISO-8601 string (``Z`` accepted); naive values are UTC."""
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be an ISO-8601 string",
                              details={field_name: "invalid datetime"})
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be an ISO-8601 string",
                              details={field_name: "invalid datetime"}) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")
