"""
Approval Workflow Blueprint.

Routes:
  POST   /approval-items                        – submit item (auto-assign when enabled)
  GET    /approval-items                        – list items (?status, ?module_type, ?priority, ?search)
  GET    /approval-items/<id>                   – item + assignments, history, transitions
  POST   /approval-items/<id>/auto-assign       – auto-assign { force_assign }
  POST   /approval-items/<id>/assign            – manual assign { assignees, notes, deadline }
  POST   /approval-items/<id>/status            – approve / reject / cancel { status, notes }
  GET    /approval-items/<id>/history           – audit trail
  GET    /approval-settings/assignment          – current strategy settings
  PUT    /approval-settings/assignment          – update strategy settings (admin)
  GET    /approval-statistics                   – dashboard counters
  GET    /approval-notifications                – queued notifications for ?recipient
  GET    /approval-notifications/unread-count   – unread counter for ?recipient

The acting identity comes from the ``X-User`` header.
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from compliance_approvals.core.exceptions import (
    AlreadyAssignedError,
    ApprovalError,
    NotFoundError,
    ValidationError,
)
from compliance_approvals.models.approval import ITEM_STATUSES, MODULE_TYPES, PRIORITIES
from compliance_approvals.services.lifecycle import available_transitions
from compliance_approvals.services.notification import NotificationService
from compliance_approvals.utils.errors import E, api_error
from compliance_approvals.utils.helpers import paginate_list, parse_bool, parse_datetime

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval", __name__, url_prefix="/api/v1")


# ── helpers ──────────────────────────────────────────────────────────────

def _engine():
    return current_app.extensions["approval_engine"]


def _current_user():
    """Acting identity from the proxy header; None when anonymous."""
    return (
        request.headers.get("X-User", "")
        or request.headers.get("X-Forwarded-User", "")
        or None
    )


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _item_or_404(item_id):
    item = _engine().store.get_item(item_id)
    if item is None:
        raise NotFoundError(resource="ApprovalItem", resource_id=item_id)
    return item


def _item_payload(item):
    data = item.to_dict()
    data["available_transitions"] = available_transitions(item.status)
    return data


# ── error handlers ───────────────────────────────────────────────────────

@approval_bp.errorhandler(AlreadyAssignedError)
def _handle_already_assigned(error: AlreadyAssignedError):
    return api_error(
        error.code, str(error), status=error.http_status, details=error.details,
        assigned=False, item_id=error.item_id,
    )


@approval_bp.errorhandler(ApprovalError)
def _handle_approval_error(error: ApprovalError):
    if error.http_status >= 500:
        logger.error("Approval request failed: %s", error, extra={"path": request.path})
    return api_error(error.code, str(error), status=error.http_status, details=error.details)


@approval_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in approval endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error", status=500)


# ═════════════════════════════════════════════════════════════════════════════
# ITEMS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approval-items", methods=["POST"])
def submit_item():
    """Submit a compliance item for approval.

    Body: { title, module_type, description?, priority?, due_date? }
    """
    data = _json_body()
    actor = _current_user()
    item, assignment = _engine().submit_item(
        title=data.get("title") or "",
        module_type=data.get("module_type") or "",
        description=data.get("description") or "",
        priority=data.get("priority") or "medium",
        created_by=actor,
        due_date=parse_datetime(data.get("due_date"), "due_date"),
    )
    return jsonify({
        "item": _item_payload(item),
        "assignment": assignment.to_dict() if assignment else None,
    }), 201


@approval_bp.route("/approval-items", methods=["GET"])
def list_items():
    """List items, newest first. Filters: ?status, ?module_type, ?priority, ?search (title)."""
    status = request.args.get("status")
    module_type = request.args.get("module_type")
    priority = request.args.get("priority")
    search = (request.args.get("search") or "").strip() or None
    if status and status not in ITEM_STATUSES:
        return api_error(E.VALIDATION_INVALID, f"status must be one of {sorted(ITEM_STATUSES)}")
    if module_type and module_type not in MODULE_TYPES:
        return api_error(E.VALIDATION_INVALID, f"module_type must be one of {sorted(MODULE_TYPES)}")
    if priority and priority not in PRIORITIES:
        return api_error(E.VALIDATION_INVALID, f"priority must be one of {sorted(PRIORITIES)}")

    rows = _engine().store.list_items(
        status=status, module_type=module_type, priority=priority, search=search,
    )
    page, total = paginate_list(rows)
    return jsonify({"items": [r.to_dict() for r in page], "total": total})


@approval_bp.route("/approval-items/<int:item_id>", methods=["GET"])
def get_item(item_id):
    store = _engine().store
    item = _item_or_404(item_id)
    data = _item_payload(item)
    data["assignments"] = [a.to_dict() for a in store.list_assignments(item_id)]
    data["history"] = [h.to_dict() for h in store.list_history(item_id)]
    return jsonify(data)


@approval_bp.route("/approval-items/<int:item_id>/history", methods=["GET"])
def get_history(item_id):
    _item_or_404(item_id)
    return jsonify([h.to_dict() for h in _engine().store.list_history(item_id)])


# ═════════════════════════════════════════════════════════════════════════════
# ASSIGNMENT
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approval-items/<int:item_id>/auto-assign", methods=["POST"])
def auto_assign(item_id):
    """Body: { force_assign?: bool }"""
    data = _json_body()
    result = _engine().auto_assign(item_id, force_assign=parse_bool(data.get("force_assign")))
    return jsonify(result.to_dict())


@approval_bp.route("/approval-items/<int:item_id>/assign", methods=["POST"])
def manual_assign(item_id):
    """Body: { assignees: [reviewer_id], notes?, deadline? }"""
    data = _json_body()
    assignees = data.get("assignees")
    if isinstance(assignees, str):
        assignees = [assignees]
    if not isinstance(assignees, list):
        return api_error(E.VALIDATION_REQUIRED, "assignees must be a list of reviewer ids")

    result = _engine().manual_assign(
        item_id,
        assignees,
        actor_id=_current_user(),
        notes=data.get("notes") or "",
        deadline=parse_datetime(data.get("deadline"), "deadline"),
    )
    return jsonify(result.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# DECISIONS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approval-items/<int:item_id>/status", methods=["POST"])
def update_status(item_id):
    """Body: { status: approved|rejected|cancelled, notes? }"""
    data = _json_body()
    new_status = data.get("status")
    if not new_status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")

    item = _engine().lifecycle.transition_status(
        item_id, new_status, actor_id=_current_user(), notes=data.get("notes") or "",
    )
    return jsonify(_item_payload(item))


# ═════════════════════════════════════════════════════════════════════════════
# SETTINGS & STATISTICS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approval-settings/assignment", methods=["GET"])
def get_assignment_settings():
    return jsonify(_engine().get_settings().to_dict())


@approval_bp.route("/approval-settings/assignment", methods=["PUT"])
def update_assignment_settings():
    data = _json_body()
    settings = _engine().update_settings(data, actor_id=_current_user())
    return jsonify(settings.to_dict())


@approval_bp.route("/approval-statistics", methods=["GET"])
def statistics():
    return jsonify(_engine().statistics())


# ═════════════════════════════════════════════════════════════════════════════
# NOTIFICATIONS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approval-notifications", methods=["GET"])
def list_notifications():
    """?recipient (defaults to X-User), ?unread_only, ?limit, ?offset"""
    recipient = request.args.get("recipient") or _current_user()
    if not recipient:
        return api_error(E.VALIDATION_REQUIRED, "recipient is required")

    rows = NotificationService.list_for_recipient(
        _engine().store, recipient, unread_only=parse_bool(request.args.get("unread_only")),
    )
    page, total = paginate_list(rows)
    return jsonify({"items": [n.to_dict() for n in page], "total": total})


@approval_bp.route("/approval-notifications/unread-count", methods=["GET"])
def unread_count():
    recipient = request.args.get("recipient") or _current_user()
    if not recipient:
        return api_error(E.VALIDATION_REQUIRED, "recipient is required")
    return jsonify({
        "recipient": recipient,
        "unread_count": NotificationService.unread_count(_engine().store, recipient),
    })
