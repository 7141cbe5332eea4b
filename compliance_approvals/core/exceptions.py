"""
Approval engine exception hierarchy.

Every service in the engine raises one of these types. Each carries a stable
machine-readable ``code`` and the HTTP status the API layer maps it to, so a
blueprint registers a single handler against ``ApprovalError`` and gets
consistent responses everywhere.

Usage:
    from compliance_approvals.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="ApprovalItem", resource_id=42)
    raise InvalidTransitionError(item_id=42, current="approved", target="rejected")
"""


class ApprovalError(Exception):
    """Base class for all engine errors."""

    code = "ERR_INTERNAL"
    http_status = 500

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class NotFoundError(ApprovalError):
    """Raised when a requested record does not exist.

    Args:
        resource: Human-readable entity name (e.g. "ApprovalItem").
        resource_id: The key that was looked up.
    """

    code = "ERR_NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(ApprovalError):
    """Raised when input is well-formed but violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    code = "ERR_VALIDATION_INVALID"
    http_status = 422


class InvalidTransitionError(ApprovalError):
    """Raised when a lifecycle transition is not legal from the current status.

    No write has happened when this is raised.
    """

    code = "ERR_INVALID_TRANSITION"
    http_status = 409

    def __init__(self, item_id, current: str, target: str, reason: str | None = None) -> None:
        self.item_id = item_id
        self.current_status = current
        self.target_status = target
        self.reason = reason
        msg = f"Cannot move approval item {item_id} from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={"current_status": current, "target_status": target})


class NoEligibleReviewersError(ApprovalError):
    """Raised when the assignment strategy selected nobody."""

    code = "ERR_NO_ELIGIBLE_REVIEWERS"
    http_status = 422

    def __init__(self, item_id, strategy: str) -> None:
        self.item_id = item_id
        self.strategy = strategy
        super().__init__(
            f"No eligible reviewers found for approval item {item_id} using {strategy} strategy",
            details={"strategy": strategy},
        )


class AuthorizationError(ApprovalError):
    """Raised when the acting identity lacks the role required for an action."""

    code = "ERR_FORBIDDEN"
    http_status = 403

    def __init__(self, actor_id: str | None, action: str) -> None:
        self.actor_id = actor_id
        self.action = action
        super().__init__(f"User {actor_id or '<anonymous>'} is not permitted to {action}")


class AlreadyAssignedError(ApprovalError):
    """Soft error: the item already has assignments, so nothing was written.

    Callers treat this as a successful no-op; the API answers 200.
    """

    code = "ERR_ALREADY_ASSIGNED"
    http_status = 200

    def __init__(self, item_id, assignees: list[str] | None = None) -> None:
        self.item_id = item_id
        self.assignees = list(assignees or [])
        super().__init__(
            f"Approval item {item_id} is already assigned",
            details={"assignees": self.assignees},
        )


class StoreError(ApprovalError):
    """Wraps an underlying persistence failure. Never retried by the engine."""

    code = "ERR_DATABASE"
    http_status = 500


class ConcurrentUpdateError(InvalidTransitionError):
    """Raised when a status compare-and-set lost against another writer."""

    def __init__(self, item_id, current: str, target: str) -> None:
        super().__init__(item_id, current, target, reason="item was modified concurrently")
