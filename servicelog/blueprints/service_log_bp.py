"""
Service Log Blueprint.

HTTP surface of the service log engine.  Every route acts as ``g.actor``
(set by the actor_context middleware from the bearer token) inside
``g.actor.organization_id``; the organization is never read from the body
or query string.

Endpoints:
    POST   /api/v1/service-plans                       create (201)
    GET    /api/v1/service-plans                       list
           Query: view, status, participant_id, created_by, mine, limit
    GET    /api/v1/service-plans/dashboard             peer dashboard
    GET    /api/v1/service-plans/review-queue          supervisor review queue
    GET    /api/v1/service-plans/<id>                  get (+ available_actions)
    PATCH  /api/v1/service-plans/<id>                  edit draft
    DELETE /api/v1/service-plans/<id>                  cancel (soft delete)
    POST   /api/v1/service-plans/<id>/actions          {action: submit|approve|...}
    GET    /api/v1/service-plans/<id>/session-note     session-note hand-off data
    POST   /api/v1/service-plans/<id>/session-note     link session note
    GET    /api/v1/service-plans/<id>/history          audit history

Layer contract:
    - Blueprint: parse the request, call the service, render JSON.
    - NO db.session calls here; plan_store owns every commit.
    - Engine errors map to HTTP once, in the handlers below.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request
from werkzeug.exceptions import HTTPException

from servicelog.core.actor import SUPERVISOR
from servicelog.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    RoleNotPermittedError,
    ValidationError,
)
from servicelog.services import audit_trail, plan_lifecycle, plan_store, plan_views
from servicelog.utils.errors import E, api_error

logger = logging.getLogger(__name__)

service_log_bp = Blueprint("service_log", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@service_log_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@service_log_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@service_log_bp.errorhandler(RoleNotPermittedError)
def _handle_role(error: RoleNotPermittedError):
    return api_error(
        E.ROLE_NOT_PERMITTED, str(error),
        details={"action": error.action, "current_status": error.current_status, "rule": error.reason},
    )


@service_log_bp.errorhandler(InvalidTransitionError)
def _handle_transition(error: InvalidTransitionError):
    return api_error(
        E.CONFLICT_STATE, str(error),
        details={"action": error.action, "current_status": error.current_status, "rule": error.reason},
    )


@service_log_bp.errorhandler(PersistenceError)
def _handle_persistence(error: PersistenceError):
    return api_error(E.UNAVAILABLE, str(error), retryable=error.retryable)


@service_log_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in service_log_bp endpoint=%s", request.endpoint,
                     extra={"request_id": getattr(g, "request_id", None)})
    return api_error(E.INTERNAL, "Internal server error")


# ── Request helpers ───────────────────────────────────────────────────────────


def _json_body(required: bool = True) -> tuple[dict | None, tuple | None]:
    """Return (body, err).  Body must be a JSON object."""
    data = request.get_json(silent=True)
    if data is None and not required and not request.get_data():
        return {}, None
    if not isinstance(data, dict):
        return None, api_error(E.BAD_REQUEST, "Request body must be a JSON object")
    return data, None


def _int_arg(name: str) -> tuple[int | None, tuple | None]:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None, None
    try:
        return int(raw), None
    except ValueError:
        return None, api_error(E.BAD_REQUEST, f"{name} must be an integer")


def _render(plan) -> dict:
    today = plan_views.organization_today(g.organization)
    return plan_views.plan_view(plan, today, actor=g.actor)


# ═════════════════════════════════════════════════════════════════════════
# Collection
# ═════════════════════════════════════════════════════════════════════════


@service_log_bp.route("/service-plans", methods=["POST"])
def create_service_plan():
    """Create a plan as the calling peer.

    Body: {service_type, planned_date, planned_duration_minutes, setting,
           planned_time?, service_code?, participant_id?, lesson_id?,
           goal_id?, planning_notes?, status?: "draft" | "planned"}
    """
    data, err = _json_body()
    if err:
        return err
    actor = g.actor
    plan = plan_store.create_plan(actor.organization_id, actor, data)
    return jsonify(_render(plan)), 201


@service_log_bp.route("/service-plans", methods=["GET"])
def list_service_plans():
    """List plans in the caller's organization.

    ``mine=true`` restricts to plans created by the caller.
    """
    actor = g.actor
    created_by, err = _int_arg("created_by")
    if err:
        return err
    limit, err = _int_arg("limit")
    if err:
        return err
    if request.args.get("mine", "").lower() in ("1", "true", "yes"):
        created_by = actor.actor_id

    items = plan_views.list_plan_views(
        actor.organization_id,
        actor,
        view=request.args.get("view") or None,
        status=request.args.get("status") or None,
        participant_id=request.args.get("participant_id") or None,
        created_by=created_by,
        limit=limit,
    )
    return jsonify({"items": items, "count": len(items)}), 200


@service_log_bp.route("/service-plans/dashboard", methods=["GET"])
def peer_dashboard():
    """Counts for the calling peer; supervisors pass ``peer_id``."""
    actor = g.actor
    peer_id = actor.actor_id
    if actor.role == SUPERVISOR:
        peer_id, err = _int_arg("peer_id")
        if err:
            return err
        if peer_id is None:
            return api_error(E.BAD_REQUEST, "peer_id is required for supervisors")
    return jsonify(plan_views.peer_dashboard(actor.organization_id, peer_id)), 200


@service_log_bp.route("/service-plans/review-queue", methods=["GET"])
def review_queue():
    actor = g.actor
    if actor.role != SUPERVISOR:
        return api_error(E.FORBIDDEN, "Only supervisors can view the review queue")
    return jsonify(plan_views.review_queue(actor.organization_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Single plan
# ═════════════════════════════════════════════════════════════════════════


@service_log_bp.route("/service-plans/<plan_id>", methods=["GET"])
def get_service_plan(plan_id: str):
    actor = g.actor
    return jsonify(plan_views.get_plan_view(actor.organization_id, plan_id, actor)), 200


@service_log_bp.route("/service-plans/<plan_id>", methods=["PATCH"])
def edit_service_plan(plan_id: str):
    """Edit planning fields of a draft (owning peer only)."""
    data, err = _json_body()
    if err:
        return err
    actor = g.actor
    plan = plan_lifecycle.edit_plan(actor.organization_id, plan_id, actor, data)
    return jsonify(_render(plan)), 200


@service_log_bp.route("/service-plans/<plan_id>", methods=["DELETE"])
def cancel_service_plan(plan_id: str):
    """Cancel a draft/planned plan.  Body (optional): {comment}."""
    data, err = _json_body(required=False)
    if err:
        return err
    actor = g.actor
    plan = plan_lifecycle.cancel_plan(actor.organization_id, plan_id, actor, data.get("comment"))
    return jsonify({"id": plan.id, "deleted": True, "plan": plan.to_dict()}), 200


@service_log_bp.route("/service-plans/<plan_id>/actions", methods=["POST"])
def plan_action(plan_id: str):
    """Run one lifecycle action.

    Body: {action, comment?, actual_duration_minutes?, attendance_count?,
           delivered_as_planned?, deviation_notes?}
    """
    data, err = _json_body()
    if err:
        return err
    action = data.get("action")
    if not isinstance(action, str) or not action.strip():
        return api_error(E.BAD_REQUEST, "action is required")

    actor = g.actor
    plan = plan_lifecycle.perform_action(actor.organization_id, plan_id, action.strip(), actor, data)
    if plan.is_deleted:
        return jsonify({"id": plan.id, "deleted": True, "plan": plan.to_dict()}), 200
    return jsonify(_render(plan)), 200


@service_log_bp.route("/service-plans/<plan_id>/session-note", methods=["GET"])
def session_note_data(plan_id: str):
    actor = g.actor
    plan = plan_store.get_plan(actor.organization_id, plan_id)
    return jsonify(plan_lifecycle.session_note_payload(plan)), 200


@service_log_bp.route("/service-plans/<plan_id>/session-note", methods=["POST"])
def link_session_note(plan_id: str):
    """Body: {session_note_id}."""
    data, err = _json_body()
    if err:
        return err
    actor = g.actor
    plan = plan_lifecycle.link_session_note(
        actor.organization_id, plan_id, actor, data.get("session_note_id"),
    )
    return jsonify(_render(plan)), 200


@service_log_bp.route("/service-plans/<plan_id>/history", methods=["GET"])
def plan_history(plan_id: str):
    actor = g.actor
    events = audit_trail.get_history(actor.organization_id, plan_id)
    return jsonify({"plan_id": plan_id, "events": [e.to_dict() for e in events]}), 200
