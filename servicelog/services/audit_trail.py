"""
Service Log — Audit Trail Recorder.

Appends one immutable ServicePlanEvent per successful engine call and
reads the trail back for history views and integrity checks.

Rules:
  - append_event() only flushes; the caller (plan_store.apply_update) owns
    the commit so the plan row and its event land in one transaction.
  - History is ordered by insertion id, never by timestamp.
  - replay_status() rebuilds a plan's status from its events alone; a plan
    whose replay disagrees with its row is an audit defect.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from servicelog.core.exceptions import NotFoundError
from servicelog.models import db
from servicelog.models.audit import PlanAction, ServicePlanEvent
from servicelog.models.organization import User
from servicelog.models.service_plan import (
    EVENT_TARGET_STATUS,
    INITIAL_STATUSES,
    PLAN_TRANSITIONS,
    ServicePlan,
)

logger = logging.getLogger(__name__)

# Audit action → the "from" list of the transition that produced it
_EVENT_SOURCES = {rule["event"]: rule["from"] for rule in PLAN_TRANSITIONS.values()}


class AuditReplayError(Exception):
    """Raised when an event stream cannot be replayed into a valid history."""

    def __init__(self, plan_id: str, position: int, problem: str) -> None:
        self.plan_id = plan_id
        self.position = position
        self.problem = problem
        super().__init__(f"Audit trail for plan {plan_id} invalid at event #{position}: {problem}")


def _snapshot_actor_name(actor) -> str | None:
    """Capture the actor's display name at write time (same organization only)."""
    user = db.session.get(User, actor.actor_id)
    if user is None or user.organization_id != actor.organization_id:
        return None
    return user.display_name


# ── Write ────────────────────────────────────────────────────────────────────


def append_event(
    plan: ServicePlan,
    action: str,
    actor,
    *,
    from_status: str | None,
    to_status: str,
    comment: str | None = None,
    details: dict | None = None,
    occurred_at=None,
) -> ServicePlanEvent:
    """Append a single event for ``plan``.  Uses ``flush`` so callers keep
    transaction control.  Returns the flushed event."""
    record = ServicePlanEvent(
        organization_id=plan.organization_id,
        service_plan_id=plan.id,
        action=action,
        actor_id=actor.actor_id,
        actor_role=actor.role,
        actor_name_snapshot=_snapshot_actor_name(actor),
        comment=comment,
        from_status=from_status,
        to_status=to_status,
        details=details or None,
    )
    if occurred_at is not None:
        record.occurred_at = occurred_at
    db.session.add(record)
    db.session.flush()
    return record


# ── Read ─────────────────────────────────────────────────────────────────────


def get_history(organization_id: int, plan_id: str) -> list[ServicePlanEvent]:
    """Return the full event log for a plan, oldest first.

    Cancelled (soft-deleted) plans keep their history.  A plan from another
    organization raises NotFoundError exactly like a missing one.
    """
    owner = db.session.execute(
        select(ServicePlan.id).where(
            ServicePlan.id == plan_id,
            ServicePlan.organization_id == organization_id,
        )
    ).scalar_one_or_none()
    if owner is None:
        raise NotFoundError("ServicePlan", plan_id)

    return list(
        db.session.execute(
            select(ServicePlanEvent)
            .where(
                ServicePlanEvent.service_plan_id == plan_id,
                ServicePlanEvent.organization_id == organization_id,
            )
            .order_by(ServicePlanEvent.id.asc())
        ).scalars()
    )


def events_for_plans(organization_id: int, plan_ids) -> dict[str, list[ServicePlanEvent]]:
    """Batch-load events for many plans, grouped by plan id in insertion order."""
    grouped: dict[str, list[ServicePlanEvent]] = {pid: [] for pid in plan_ids}
    if not grouped:
        return grouped
    rows = db.session.execute(
        select(ServicePlanEvent)
        .where(
            ServicePlanEvent.organization_id == organization_id,
            ServicePlanEvent.service_plan_id.in_(list(grouped)),
        )
        .order_by(ServicePlanEvent.id.asc())
    ).scalars()
    for ev in rows:
        grouped[ev.service_plan_id].append(ev)
    return grouped


# ── Replay ───────────────────────────────────────────────────────────────────


def replay_status(events, plan_id: str | None = None) -> tuple[str, bool]:
    """Rebuild ``(status, cancelled)`` from an ordered event sequence.

    Each event must start from the state produced by the one before it and
    follow an edge of PLAN_TRANSITIONS.  Raises AuditReplayError otherwise.
    """
    events = list(events)
    pid = plan_id or (events[0].service_plan_id if events else "?")
    if not events:
        raise AuditReplayError(pid, 0, "no events recorded")

    first = events[0]
    if first.action != PlanAction.CREATED.value:
        raise AuditReplayError(pid, 1, f"first event is '{first.action}', expected 'created'")
    if first.to_status not in INITIAL_STATUSES:
        raise AuditReplayError(pid, 1, f"plan created in invalid status '{first.to_status}'")

    status = first.to_status
    cancelled = False
    for position, ev in enumerate(events[1:], start=2):
        if cancelled:
            raise AuditReplayError(pid, position, f"'{ev.action}' recorded after deletion")
        if ev.action == PlanAction.CREATED.value:
            raise AuditReplayError(pid, position, "duplicate 'created' event")
        sources = _EVENT_SOURCES.get(ev.action)
        if sources is None:
            raise AuditReplayError(pid, position, f"unknown action '{ev.action}'")
        if ev.from_status != status:
            raise AuditReplayError(
                pid, position,
                f"'{ev.action}' recorded from '{ev.from_status}' but replayed status is '{status}'",
            )
        if status not in sources:
            raise AuditReplayError(pid, position, f"'{ev.action}' is not allowed from '{status}'")

        target = EVENT_TARGET_STATUS.get(ev.action, status)
        if ev.to_status != target:
            raise AuditReplayError(
                pid, position, f"'{ev.action}' recorded to '{ev.to_status}', expected '{target}'",
            )
        status = target
        if ev.action == PlanAction.DELETED.value:
            cancelled = True

    return status, cancelled


def verify_plan_integrity(plan: ServicePlan, events=None) -> dict:
    """Compare a plan row with the replay of its audit trail.

    Returns:
        {"plan_id", "status", "replayed_status", "consistent", "problems"}
    """
    if events is None:
        events = get_history(plan.organization_id, plan.id)

    problems: list[str] = []
    replayed = None
    try:
        replayed, cancelled = replay_status(events, plan.id)
    except AuditReplayError as exc:
        problems.append(str(exc))
    else:
        if replayed != plan.status:
            problems.append(f"row status '{plan.status}' != replayed status '{replayed}'")
        if cancelled != plan.is_deleted:
            problems.append(
                "plan is soft-deleted without a 'deleted' event" if plan.is_deleted
                else "'deleted' event recorded but plan row is still active"
            )

    return {
        "plan_id": plan.id,
        "status": plan.status,
        "replayed_status": replayed,
        "consistent": not problems,
        "problems": problems,
    }


def verify_all_plans(organization_id: int | None = None) -> list[dict]:
    """Run verify_plan_integrity over every plan (optionally one organization).

    Returns only the inconsistent reports; an empty list means the trail
    reproduces every row.
    """
    stmt = select(ServicePlan).order_by(ServicePlan.organization_id, ServicePlan.created_at)
    if organization_id is not None:
        stmt = stmt.where(ServicePlan.organization_id == organization_id)

    failures = []
    checked = 0
    for plan in db.session.execute(stmt).scalars():
        checked += 1
        report = verify_plan_integrity(plan)
        if not report["consistent"]:
            failures.append(report)
            logger.warning(
                "Audit trail mismatch plan=%s: %s", plan.id, "; ".join(report["problems"]),
                extra={"organization_id": plan.organization_id, "plan_id": plan.id},
            )
    logger.info("Audit trail verified: %d plans, %d inconsistent", checked, len(failures))
    return failures
