"""
Service Log — Service Plan Store.

Authoritative persisted state of every ServicePlan.  All reads and writes are
organization-scoped; organization_id is always an explicit parameter (never
taken from ``g``).

Rules:
  - apply_update() is the only code path that changes a stored plan, and it
    always appends the matching audit event in the same transaction.
  - db.session.commit() for plan writes happens only in this file.
  - A commit failure rolls back both the plan change and the event and is
    raised as PersistenceError (nothing applied, safe to retry).

Usage:
    from servicelog.services import plan_store

    plan = plan_store.create_plan(org_id, actor, {"planned_date": "2025-03-01", ...})
    plan = plan_store.get_plan(org_id, plan.id)
    plans = plan_store.list_plans(org_id, view="review")
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from servicelog.core.exceptions import (
    NotFoundError,
    PersistenceError,
    RoleNotPermittedError,
    ValidationError,
)
from servicelog.models import db
from servicelog.models.audit import PlanAction
from servicelog.models.organization import Organization
from servicelog.models.service_plan import (
    INITIAL_STATUSES,
    MAX_DURATION_MINUTES,
    PLAN_STATUSES,
    SERVICE_CODE_MAX_LEN,
    SERVICE_TYPES,
    SETTINGS,
    VIEW_STATUSES,
    PlanStatus,
    ServicePlan,
)
from servicelog.services import audit_trail
from servicelog.utils.helpers import next_timestamp, parse_date, parse_time

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200

_REQUIRED_ON_CREATE = ("service_type", "planned_date", "planned_duration_minutes", "setting")
_OPTIONAL_IDS = ("participant_id", "lesson_id", "goal_id")


# ── Validation ───────────────────────────────────────────────────────────────


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def check_minutes(value, field: str, errors: dict):
    """Validate a duration in whole minutes (1..MAX_DURATION_MINUTES)."""
    if isinstance(value, bool) or not isinstance(value, int):
        errors[field] = "must be a whole number of minutes"
        return None
    if value <= 0:
        errors[field] = "must be greater than 0"
        return None
    if value > MAX_DURATION_MINUTES:
        errors[field] = f"must be at most {MAX_DURATION_MINUTES} minutes"
        return None
    return value


def _optional_text(value, field: str, errors: dict, max_len: int | None = None):
    if _is_blank(value):
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        errors[field] = "must be a string"
        return None
    text = str(value).strip()
    if max_len is not None and len(text) > max_len:
        errors[field] = f"must be at most {max_len} characters"
        return None
    return text


def normalize_planning_fields(data: dict, *, partial: bool = False) -> dict:
    """Validate planning attributes and return them keyed by column name.

    With ``partial=True`` (draft edits) only the keys present in ``data`` are
    validated and returned; required fields may be omitted but not blanked.

    Raises:
        ValidationError: with one ``details`` entry per offending field.
    """
    errors: dict[str, str] = {}
    out: dict = {}

    for field in _REQUIRED_ON_CREATE:
        if field in data and _is_blank(data.get(field)):
            errors[field] = "is required"
        elif not partial and field not in data:
            errors[field] = "is required"

    if "service_type" in data and "service_type" not in errors:
        value = data["service_type"]
        if value not in SERVICE_TYPES:
            errors["service_type"] = f"must be one of: {', '.join(sorted(SERVICE_TYPES))}"
        else:
            out["service_type"] = value

    if "setting" in data and "setting" not in errors:
        value = data["setting"]
        if value not in SETTINGS:
            errors["setting"] = f"must be one of: {', '.join(sorted(SETTINGS))}"
        else:
            out["setting"] = value

    if "planned_date" in data and "planned_date" not in errors:
        try:
            out["planned_date"] = parse_date(data["planned_date"])
        except ValueError as exc:
            errors["planned_date"] = str(exc)

    if "planned_time" in data:
        try:
            out["planned_time"] = parse_time(data["planned_time"])
        except ValueError as exc:
            errors["planned_time"] = str(exc)

    if "planned_duration_minutes" in data and "planned_duration_minutes" not in errors:
        minutes = check_minutes(data["planned_duration_minutes"], "planned_duration_minutes", errors)
        if minutes is not None:
            out["planned_duration_minutes"] = minutes

    if "service_code" in data:
        out["service_code"] = _optional_text(
            data["service_code"], "service_code", errors, SERVICE_CODE_MAX_LEN,
        )
    for field in _OPTIONAL_IDS:
        if field in data:
            out[field] = _optional_text(data[field], field, errors, 64)
    if "planning_notes" in data:
        out["planning_notes"] = _optional_text(data["planning_notes"], "planning_notes", errors)

    if errors:
        raise ValidationError("Invalid service plan input", details=errors)
    return out


# ── Scope helpers ────────────────────────────────────────────────────────────


def get_organization(organization_id: int) -> Organization:
    """Return an active organization or raise NotFoundError."""
    org = db.session.get(Organization, organization_id)
    if org is None or not org.is_active:
        raise NotFoundError("Organization", organization_id)
    return org


def _check_actor_scope(organization_id: int, actor) -> None:
    if actor.organization_id != organization_id:
        raise NotFoundError("Organization", organization_id)


# ── Create / read ────────────────────────────────────────────────────────────


def create_plan(organization_id: int, actor, data: dict) -> ServicePlan:
    """Insert a new plan in ``draft`` (default) or ``planned``.

    Args:
        organization_id: Owning organization.
        actor:           ActorContext of the planning peer.
        data:            Planning attributes plus optional ``status``.

    Raises:
        RoleNotPermittedError: actor is not a peer.
        ValidationError:       missing/malformed fields or unknown status.
        PersistenceError:      store failure (nothing written).
    """
    _check_actor_scope(organization_id, actor)
    if not actor.is_peer:
        raise RoleNotPermittedError(
            "create", None, "only peer specialists can plan services",
        )
    get_organization(organization_id)

    fields = normalize_planning_fields(data)
    initial = data.get("status") or PlanStatus.DRAFT.value
    if initial not in INITIAL_STATUSES:
        raise ValidationError(
            "Invalid service plan input",
            details={"status": f"must be one of: {', '.join(INITIAL_STATUSES)}"},
        )

    now = next_timestamp(None)
    plan = ServicePlan(
        organization_id=organization_id,
        created_by=actor.actor_id,
        status=initial,
        created_at=now,
        updated_at=now,
        **fields,
    )
    try:
        db.session.add(plan)
        db.session.flush()
        audit_trail.append_event(
            plan, PlanAction.CREATED.value, actor,
            from_status=None, to_status=initial, occurred_at=now,
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Service plan create failed", extra={"organization_id": organization_id})
        raise PersistenceError("Could not save the service plan; nothing was written") from exc

    logger.info(
        "Service plan %s created (%s)", plan.id, initial,
        extra={"organization_id": organization_id, "plan_id": plan.id,
               "action": "create", "actor_id": actor.actor_id, "actor_role": actor.role},
    )
    return plan


def get_plan(organization_id: int, plan_id: str) -> ServicePlan:
    """Fetch one active plan within the organization or raise NotFoundError.

    Cancelled plans and plans of other organizations are both "not found".
    """
    plan = db.session.execute(
        ServicePlan.scoped_select(organization_id).where(
            ServicePlan.id == plan_id,
            ServicePlan.active_clause(),
        )
    ).scalar_one_or_none()
    if plan is None:
        raise NotFoundError("ServicePlan", plan_id, organization_id)
    return plan


def lock_plan(organization_id: int, plan_id: str) -> ServicePlan:
    """Like get_plan, but takes a row lock and refreshes any cached state.

    ``FOR UPDATE`` serializes writers per plan on PostgreSQL; SQLite ignores
    it and the ``version`` column catches the race at flush time instead.
    """
    plan = db.session.execute(
        ServicePlan.scoped_select(organization_id)
        .where(ServicePlan.id == plan_id, ServicePlan.active_clause())
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if plan is None:
        raise NotFoundError("ServicePlan", plan_id, organization_id)
    return plan


def _list_limit(limit) -> int:
    default = current_app.config.get("SERVICE_LOG_LIST_LIMIT", DEFAULT_LIST_LIMIT)
    ceiling = current_app.config.get("SERVICE_LOG_MAX_LIST_LIMIT", MAX_LIST_LIMIT)
    if limit is None:
        return default
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValidationError("Invalid list filter", details={"limit": "must be a positive integer"})
    return min(limit, ceiling)


def list_plans(
    organization_id: int,
    *,
    view: str | None = None,
    status: str | None = None,
    participant_id: str | None = None,
    created_by: int | None = None,
    limit: int | None = None,
) -> list[ServicePlan]:
    """List active plans of one organization.

    Filters:
        view:           upcoming (draft/planned/approved), completed
                        (completed/verified), review (planned/completed), all
        status:         one exact status
        participant_id: plans linked to one participant
        created_by:     plans owned by one peer ("my" views)

    Ordering: review/upcoming by planned_date ascending, completed by
    completed_at descending, otherwise planned_date descending.
    """
    errors = {}
    if view is not None and view not in VIEW_STATUSES:
        errors["view"] = f"must be one of: {', '.join(sorted(VIEW_STATUSES))}"
    if status is not None and status not in PLAN_STATUSES:
        errors["status"] = f"must be one of: {', '.join(sorted(PLAN_STATUSES))}"
    if errors:
        raise ValidationError("Invalid list filter", details=errors)
    row_limit = _list_limit(limit)

    stmt = ServicePlan.scoped_select(organization_id).where(ServicePlan.active_clause())
    if view is not None:
        stmt = stmt.where(ServicePlan.status.in_(VIEW_STATUSES[view]))
    if status is not None:
        stmt = stmt.where(ServicePlan.status == status)
    if participant_id is not None:
        stmt = stmt.where(ServicePlan.participant_id == participant_id)
    if created_by is not None:
        stmt = stmt.where(ServicePlan.created_by == created_by)

    if view in ("review", "upcoming"):
        stmt = stmt.order_by(ServicePlan.planned_date.asc(), ServicePlan.created_at.asc())
    elif view == "completed":
        stmt = stmt.order_by(ServicePlan.completed_at.desc(), ServicePlan.planned_date.desc())
    else:
        stmt = stmt.order_by(ServicePlan.planned_date.desc(), ServicePlan.created_at.desc())

    return list(db.session.execute(stmt.limit(row_limit)).scalars())


# ── Write ────────────────────────────────────────────────────────────────────


def apply_update(
    plan: ServicePlan,
    changes: dict,
    *,
    action: str,
    actor,
    comment: str | None = None,
    new_status: str | None = None,
    details: dict | None = None,
    soft_delete: bool = False,
) -> ServicePlan:
    """Apply ``changes`` to ``plan`` and append one audit event, atomically.

    ``status`` may not appear in ``changes``; only the transition engine
    passes ``new_status``.  Every call bumps ``updated_at`` (monotonic) and
    therefore the optimistic ``version``.

    Raises:
        StaleDataError:   another writer committed first (rolled back; the
                          engine re-evaluates against the fresh row).
        PersistenceError: any other store failure (rolled back).
    """
    if "status" in changes:
        raise ValueError("status is written only through new_status")

    from_status = plan.status
    now = next_timestamp(plan.updated_at)
    try:
        for field, value in changes.items():
            setattr(plan, field, value)
        if new_status is not None:
            plan.status = new_status
        if soft_delete:
            plan.soft_delete(now)
        plan.updated_at = now
        audit_trail.append_event(
            plan, action, actor,
            from_status=from_status, to_status=plan.status,
            comment=comment, details=details, occurred_at=now,
        )
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception(
            "Service plan write failed plan=%s action=%s", plan.id, action,
            extra={"organization_id": plan.organization_id, "plan_id": plan.id, "action": action},
        )
        raise PersistenceError("Could not save the service plan; nothing was written") from exc
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Service plan %s: %s (%s → %s)", plan.id, action, from_status, plan.status,
        extra={"organization_id": plan.organization_id, "plan_id": plan.id, "action": action,
               "actor_id": actor.actor_id, "actor_role": actor.role},
    )
    return plan
