"""
Service Log — Transition Engine.

The single writer of ServicePlan.status.  Every action is evaluated in the
same order and rejected before anything is written:

    1. load      — plan must exist in the organization (NotFoundError)
    2. actor     — role and ownership (RoleNotPermittedError)
    3. payload   — required comment, delivery fields (ValidationError)
    4. state     — current status must allow the action (InvalidTransitionError)

``complete`` and ``edit`` check state before payload: a finished plan, or one
that has left draft, reports the conflict whatever the request body holds.

On success the plan change and its audit event are committed together by
plan_store.apply_update.

Concurrency:
    The plan row is read with FOR UPDATE and every write bumps the optimistic
    ``version``.  If another request committed in between, the flush fails with
    StaleDataError; the unit is rolled back, the plan is re-read and the action
    is evaluated once more against the winner's state.

Usage:
    from servicelog.services import plan_lifecycle

    plan_lifecycle.submit_plan(org_id, plan_id, actor)
    plan_lifecycle.perform_action(org_id, plan_id, "request-change", actor,
                                  {"comment": "add the goal id"})
"""

from __future__ import annotations

import logging

from sqlalchemy.orm.exc import StaleDataError

from servicelog.core.exceptions import (
    InvalidTransitionError,
    RoleNotPermittedError,
    ValidationError,
)
from servicelog.models import db
from servicelog.models.service_plan import (
    PLAN_TRANSITIONS,
    STATE_RULES,
    PlanStatus,
    ServicePlan,
    validate_plan_transition,
)
from servicelog.services import plan_store
from servicelog.utils.helpers import next_timestamp

logger = logging.getLogger(__name__)

# Actions accepted by POST /<id>/actions; edit and link-note have their own routes
ENGINE_ACTIONS = (
    "submit",
    "approve",
    "comment",
    "request-change",
    "complete",
    "verify",
    "cancel",
)

_ROLE_RULES = {
    "submit": "only the peer who created the plan can submit it",
    "approve": "only a supervisor can approve a service plan",
    "comment": "only a supervisor can comment on a service plan",
    "request-change": "only a supervisor can request changes",
    "complete": "only the peer who created the plan can complete it",
    "verify": "only a supervisor can verify a completed service",
    "cancel": "only the peer who created the plan can delete it",
    "edit": "only the peer who created the plan can edit it",
    "link-note": "only the peer who delivered the service can link its session note",
}

MAX_COMMENT_LEN = 2000

_STATE_BEFORE_PAYLOAD = frozenset({"complete", "edit"})


def _lock_plan(organization_id: int, plan_id: str) -> ServicePlan:
    return plan_store.lock_plan(organization_id, plan_id)


# ── Checks ───────────────────────────────────────────────────────────────────


def _check_actor(plan: ServicePlan, action: str, actor) -> None:
    rule = PLAN_TRANSITIONS[action]
    if actor.organization_id != plan.organization_id or actor.role != rule["role"]:
        raise RoleNotPermittedError(action, plan.status, _ROLE_RULES[action], plan.id)
    if rule["owner_only"] and plan.created_by != actor.actor_id:
        raise RoleNotPermittedError(action, plan.status, _ROLE_RULES[action], plan.id)


def validate_transition(plan: ServicePlan, action: str) -> None:
    """Raise InvalidTransitionError unless ``action`` is allowed from the plan's status."""
    if not validate_plan_transition(plan.status, action):
        raise InvalidTransitionError(action, plan.status, STATE_RULES[action], plan.id)
    if action == "link-note" and plan.session_note_id:
        raise InvalidTransitionError(
            action, plan.status,
            f"session note {plan.session_note_id} is already linked to this plan", plan.id,
        )


def _comment(payload: dict, *, required: bool = False) -> str | None:
    raw = payload.get("comment")
    if raw is not None and not isinstance(raw, str):
        raise ValidationError("Invalid comment", details={"comment": "must be a string"})
    text = (raw or "").strip()
    if not text:
        if required:
            raise ValidationError(
                "A comment is required for this action",
                details={"comment": "is required"},
            )
        return None
    if len(text) > MAX_COMMENT_LEN:
        raise ValidationError(
            "Invalid comment", details={"comment": f"must be at most {MAX_COMMENT_LEN} characters"},
        )
    return text


def _completion_fields(payload: dict, actor, plan: ServicePlan) -> dict:
    """Validate delivery data; deviation_notes is required iff not delivered as planned."""
    errors: dict[str, str] = {}

    actual = plan_store.check_minutes(
        payload.get("actual_duration_minutes"), "actual_duration_minutes", errors,
    )

    attendance = payload.get("attendance_count")
    if isinstance(attendance, bool) or not isinstance(attendance, int):
        errors["attendance_count"] = "must be a whole number"
    elif attendance < 1:
        errors["attendance_count"] = "must be at least 1"

    as_planned = payload.get("delivered_as_planned")
    if not isinstance(as_planned, bool):
        errors["delivered_as_planned"] = "must be true or false"

    notes = payload.get("deviation_notes")
    if notes is not None and not isinstance(notes, str):
        errors["deviation_notes"] = "must be a string"
        notes = None
    notes = notes.strip() if notes else None
    if as_planned is False and not notes:
        errors["deviation_notes"] = "is required when the service was not delivered as planned"
    elif as_planned is True and notes:
        errors["deviation_notes"] = "must be empty when the service was delivered as planned"

    if errors:
        raise ValidationError("Invalid completion data", details=errors)

    return {
        "actual_duration_minutes": actual,
        "attendance_count": attendance,
        "delivered_as_planned": as_planned,
        "deviation_notes": notes,
        "completed_at": next_timestamp(plan.updated_at),
        "completed_by": actor.actor_id,
    }


def _session_note_id(payload: dict) -> str:
    value = payload.get("session_note_id")
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Invalid session note", details={"session_note_id": "is required"})
    value = value.strip()
    if len(value) > 64:
        raise ValidationError(
            "Invalid session note", details={"session_note_id": "must be at most 64 characters"},
        )
    return value


def _prepare(plan: ServicePlan, action: str, actor, payload: dict) -> dict:
    """Validate the payload and return the apply_update keyword arguments."""
    rule = PLAN_TRANSITIONS[action]
    update = {"changes": {}, "comment": None, "details": None,
              "new_status": rule["to"], "soft_delete": False}

    if action == "complete":
        update["changes"] = _completion_fields(payload, actor, plan)
        update["comment"] = _comment(payload)
    elif action == "verify":
        update["comment"] = _comment(payload)
        update["changes"] = {
            "verified_at": next_timestamp(plan.updated_at),
            "verified_by": actor.actor_id,
        }
    elif action in ("request-change", "comment"):
        update["comment"] = _comment(payload, required=True)
    elif action == "cancel":
        update["comment"] = _comment(payload)
        update["soft_delete"] = True
    elif action == "edit":
        fields = plan_store.normalize_planning_fields(payload, partial=True)
        changed = sorted(k for k, v in fields.items() if getattr(plan, k) != v)
        if not fields:
            raise ValidationError("No planning fields supplied", details={"fields": "nothing to update"})
        if not changed:
            raise ValidationError(
                "No planning fields changed", details={"fields": "values match the current plan"},
            )
        update["changes"] = {k: fields[k] for k in changed}
        update["details"] = {"fields": changed}
    elif action == "link-note":
        note_id = _session_note_id(payload)
        update["changes"] = {"session_note_id": note_id}
        update["details"] = {"session_note_id": note_id}
    else:
        update["comment"] = _comment(payload)
    return update


# ── Engine ───────────────────────────────────────────────────────────────────


def _evaluate(plan: ServicePlan, action: str, actor, payload: dict) -> ServicePlan:
    _check_actor(plan, action, actor)
    if action in _STATE_BEFORE_PAYLOAD:
        validate_transition(plan, action)
        update = _prepare(plan, action, actor, payload)
    else:
        update = _prepare(plan, action, actor, payload)
        validate_transition(plan, action)
    return plan_store.apply_update(plan, action=PLAN_TRANSITIONS[action]["event"], actor=actor, **update)


def _transition(organization_id: int, plan_id: str, action: str, actor, payload=None) -> ServicePlan:
    payload = payload or {}
    for attempt in (1, 2):
        plan = _lock_plan(organization_id, plan_id)
        try:
            return _evaluate(plan, action, actor, payload)
        except StaleDataError:
            logger.info(
                "Service plan %s changed concurrently during '%s' (attempt %d)",
                plan_id, action, attempt,
                extra={"organization_id": organization_id, "plan_id": plan_id, "action": action},
            )
            if attempt == 2:
                fresh = _lock_plan(organization_id, plan_id)
                raise InvalidTransitionError(
                    action, fresh.status, "the plan was modified by another request", plan_id,
                ) from None
        except (InvalidTransitionError, ValidationError) as exc:
            db.session.rollback()
            logger.info(
                "Service plan %s: '%s' rejected: %s", plan_id, action, exc,
                extra={"organization_id": organization_id, "plan_id": plan_id, "action": action,
                       "actor_id": actor.actor_id, "actor_role": actor.role},
            )
            raise
    raise AssertionError("unreachable")


def perform_action(organization_id: int, plan_id: str, action: str, actor, payload=None) -> ServicePlan:
    """Dispatch one engine action by name (submit, approve, comment, ...)."""
    if action not in ENGINE_ACTIONS:
        raise ValidationError(
            "Unknown action", details={"action": f"must be one of: {', '.join(ENGINE_ACTIONS)}"},
        )
    return _transition(organization_id, plan_id, action, actor, payload)


def submit_plan(organization_id, plan_id, actor, comment=None):
    """draft → planned (owning peer)."""
    return _transition(organization_id, plan_id, "submit", actor, {"comment": comment})


def approve_plan(organization_id, plan_id, actor, comment=None):
    """planned → approved (supervisor, optional comment)."""
    return _transition(organization_id, plan_id, "approve", actor, {"comment": comment})


def comment_on_plan(organization_id, plan_id, actor, comment):
    """Supervisor note on a planned/completed plan; status unchanged.

    The comment is the whole content of this action, so a blank one is a
    ValidationError (like request-change).
    """
    return _transition(organization_id, plan_id, "comment", actor, {"comment": comment})


def request_change(organization_id, plan_id, actor, comment):
    """planned → draft (supervisor, comment required)."""
    return _transition(organization_id, plan_id, "request-change", actor, {"comment": comment})


def complete_plan(
    organization_id,
    plan_id,
    actor,
    *,
    actual_duration_minutes,
    attendance_count,
    delivered_as_planned,
    deviation_notes=None,
    comment=None,
):
    """planned/approved → completed (owning peer) with delivery data."""
    return _transition(organization_id, plan_id, "complete", actor, {
        "actual_duration_minutes": actual_duration_minutes,
        "attendance_count": attendance_count,
        "delivered_as_planned": delivered_as_planned,
        "deviation_notes": deviation_notes,
        "comment": comment,
    })


def verify_plan(organization_id, plan_id, actor, comment=None):
    """completed → verified (supervisor)."""
    return _transition(organization_id, plan_id, "verify", actor, {"comment": comment})


def cancel_plan(organization_id, plan_id, actor, comment=None):
    """Soft-delete a draft/planned plan; status and history are kept."""
    return _transition(organization_id, plan_id, "cancel", actor, {"comment": comment})


def edit_plan(organization_id, plan_id, actor, data):
    """Change planning fields of a draft; audited as 'updated'."""
    return _transition(organization_id, plan_id, "edit", actor, data)


def link_session_note(organization_id, plan_id, actor, session_note_id):
    return _transition(
        organization_id, plan_id, "link-note", actor, {"session_note_id": session_note_id},
    )


# ── Derived ──────────────────────────────────────────────────────────────────


def available_actions(plan: ServicePlan, actor) -> list[str]:
    """Actions ``actor`` could take on ``plan`` right now, in table order."""
    if plan.is_deleted or actor.organization_id != plan.organization_id:
        return []
    allowed = []
    for action, rule in PLAN_TRANSITIONS.items():
        if actor.role != rule["role"]:
            continue
        if rule["owner_only"] and plan.created_by != actor.actor_id:
            continue
        if not validate_plan_transition(plan.status, action):
            continue
        if action == "link-note" and plan.session_note_id:
            continue
        allowed.append(action)
    return allowed


def session_note_payload(plan: ServicePlan) -> dict:
    """Hand-off data for an external session-note creator."""
    if plan.status not in (PlanStatus.COMPLETED.value, PlanStatus.VERIFIED.value):
        raise InvalidTransitionError(
            "session-note", plan.status,
            "session note data is available once the service is completed", plan.id,
        )
    return {
        "plannedDate": plan.planned_date.isoformat(),
        "actualDuration": plan.actual_duration_minutes,
        "serviceType": plan.service_type,
        "setting": plan.setting,
    }
