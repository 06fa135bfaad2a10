"""
Engine-wide exception hierarchy.

Every service raises these canonical types; the blueprint registers one
handler per type and maps it to an HTTP status:

    NotFoundError           → 404
    ValidationError         → 422
    InvalidTransitionError  → 409
    RoleNotPermittedError   → 403  (subclass of InvalidTransitionError)
    PersistenceError        → 503  (safe to retry verbatim)

Usage:
    from servicelog.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ServicePlan", resource_id=plan_id)
    raise ValidationError("setting is invalid", details={"setting": "..."})
"""


class NotFoundError(Exception):
    """Raised when a record does not exist within the caller's organization.

    Used for BOTH genuinely missing records AND cross-organization lookups.
    The two cases are indistinguishable to the caller.

    Args:
        resource: Human-readable entity name (e.g. "ServicePlan").
        resource_id: The id that was looked up.
        organization_id: The scope that was enforced. For logs only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        organization_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.organization_id = organization_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is missing or malformed (create, edit, complete, ...).

    Args:
        message: Human-readable explanation of what failed.
        details: Field-level breakdown. Keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidTransitionError(Exception):
    """Raised when an action is not permitted from the plan's current state.

    The message always names the current status and the requested action,
    e.g. "Cannot 'verify' service plan abc (status=planned): plan has not
    been completed".

    Args:
        action: The requested action ("submit", "verify", ...).
        current_status: Status of the plan when the request was evaluated.
        reason: Which rule was violated.
        plan_id: Optional plan id for the message.
    """

    def __init__(
        self,
        action: str,
        current_status: str | None,
        reason: str | None = None,
        plan_id: str | None = None,
    ) -> None:
        self.action = action
        self.current_status = current_status
        self.reason = reason
        self.plan_id = plan_id
        target = f"service plan {plan_id}" if plan_id else "service plan"
        msg = f"Cannot '{action}' {target} (status={current_status})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class RoleNotPermittedError(InvalidTransitionError):
    """Raised when the actor's role (or ownership) does not allow the action."""


class PersistenceError(Exception):
    """Raised when the store fails during the atomic plan + audit write.

    Nothing was committed, so the caller may retry the same request.
    """

    retryable = True

    def __init__(self, message: str = "Service plan store unavailable") -> None:
        super().__init__(message)


class ImmutableRecordError(Exception):
    """Raised on any attempt to update or delete an append-only audit row."""

    def __init__(self, resource: str, resource_id, operation: str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.operation = operation
        super().__init__(f"{resource} id={resource_id} is append-only; {operation} is not allowed")
