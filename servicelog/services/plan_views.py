"""
Service Log — Query/View Layer.

Read-only projections over the plan store and the audit trail:

    - plan_view / list_plan_views : plan dicts with overdue flag, comments
                                    and the caller's available actions
    - peer_dashboard              : per-peer status counts + this-week count
    - review_queue                : organization-wide supervisor work list

Week convention: "today" is the current instant in the organization's
reporting timezone; a week runs Sunday through Saturday in that timezone.
Every function accepts an explicit ``now`` so the boundaries are testable.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app
from sqlalchemy import func, select

from servicelog.models import db
from servicelog.models.organization import Organization, User
from servicelog.models.service_plan import OVERDUE_STATUSES, PLAN_STATUSES, PlanStatus, ServicePlan
from servicelog.services import audit_trail, plan_lifecycle, plan_store
from servicelog.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


# ── Calendar ─────────────────────────────────────────────────────────────────


def organization_timezone(organization: Organization) -> ZoneInfo:
    name = organization.reporting_timezone or current_app.config.get("REPORTING_TIMEZONE", "UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(
            "Unknown reporting timezone %r for organization %s, using UTC", name, organization.id,
            extra={"organization_id": organization.id},
        )
        return ZoneInfo("UTC")


def organization_today(organization: Organization, now=None):
    """Calendar date of ``now`` (default: current instant) in the organization's timezone."""
    instant = as_utc(now) if now is not None else utcnow()
    return instant.astimezone(organization_timezone(organization)).date()


def week_bounds(today):
    """Return (sunday, saturday) of the week containing ``today``."""
    start = today - timedelta(days=(today.weekday() + 1) % 7)
    return start, start + timedelta(days=6)


# ── Plan projections ─────────────────────────────────────────────────────────


def _comments(events) -> list[dict]:
    return [ev.to_dict() for ev in events if ev.comment]


def plan_view(plan: ServicePlan, today, *, events=None, actor=None) -> dict:
    data = plan.to_dict()
    data["overdue"] = plan.is_overdue(today)
    if events is not None:
        data["comments"] = _comments(events)
    if actor is not None:
        data["available_actions"] = plan_lifecycle.available_actions(plan, actor)
    return data


def get_plan_view(organization_id: int, plan_id: str, actor, now=None) -> dict:
    """Single plan with overdue flag, comments and the caller's actions."""
    org = plan_store.get_organization(organization_id)
    plan = plan_store.get_plan(organization_id, plan_id)
    events = audit_trail.get_history(organization_id, plan_id)
    return plan_view(plan, organization_today(org, now), events=events, actor=actor)


def list_plan_views(organization_id: int, actor, *, now=None, **filters) -> list[dict]:
    """plan_store.list_plans() rendered with comments and overdue flags."""
    org = plan_store.get_organization(organization_id)
    plans = plan_store.list_plans(organization_id, **filters)
    today = organization_today(org, now)
    events = audit_trail.events_for_plans(organization_id, [p.id for p in plans])
    return [plan_view(p, today, events=events[p.id], actor=actor) for p in plans]


# ── Peer dashboard ───────────────────────────────────────────────────────────


def peer_dashboard(organization_id: int, peer_id: int, now=None) -> dict:
    """Counts of the peer's own active plans.

    Returns:
        {"counts": {status: n}, "this_week": n, "overdue": n,
         "upcoming": n, "completed": n, "week": {"start", "end"}, "today"}
    """
    org = plan_store.get_organization(organization_id)
    today = organization_today(org, now)
    start, end = week_bounds(today)

    scope = (
        ServicePlan.organization_id == organization_id,
        ServicePlan.created_by == peer_id,
        ServicePlan.active_clause(),
    )

    counts = {status: 0 for status in sorted(PLAN_STATUSES)}
    rows = db.session.execute(
        select(ServicePlan.status, func.count(ServicePlan.id)).where(*scope).group_by(ServicePlan.status)
    ).all()
    for status, n in rows:
        counts[status] = n

    this_week = db.session.execute(
        select(func.count(ServicePlan.id)).where(
            *scope, ServicePlan.planned_date >= start, ServicePlan.planned_date <= end,
        )
    ).scalar_one()
    overdue = db.session.execute(
        select(func.count(ServicePlan.id)).where(
            *scope,
            ServicePlan.status.in_(OVERDUE_STATUSES),
            ServicePlan.planned_date < today,
        )
    ).scalar_one()

    return {
        "peer_id": peer_id,
        "counts": counts,
        "upcoming": counts["draft"] + counts["planned"] + counts["approved"],
        "completed": counts["completed"] + counts["verified"],
        "this_week": this_week,
        "overdue": overdue,
        "week": {"start": start.isoformat(), "end": end.isoformat()},
        "today": today.isoformat(),
    }


# ── Supervisor review queue ──────────────────────────────────────────────────


def _peer_names(organization_id: int, peer_ids) -> dict[int, str]:
    if not peer_ids:
        return {}
    users = db.session.execute(
        select(User).where(User.organization_id == organization_id, User.id.in_(list(peer_ids)))
    ).scalars()
    return {u.id: u.display_name for u in users}


def review_queue(organization_id: int, now=None) -> dict:
    """Every plan awaiting a supervisor decision, oldest planned date first.

    Returns:
        {"pending_approval": [...], "pending_verification": [...], "total", "today"}
        Each item is a plan dict plus ``peer_name``, ``comments`` and ``overdue``.
    """
    org = plan_store.get_organization(organization_id)
    today = organization_today(org, now)

    plans = list(db.session.execute(
        ServicePlan.scoped_select(organization_id)
        .where(
            ServicePlan.active_clause(),
            ServicePlan.status.in_((PlanStatus.PLANNED.value, PlanStatus.COMPLETED.value)),
        )
        .order_by(ServicePlan.planned_date.asc(), ServicePlan.created_at.asc())
    ).scalars())

    events = audit_trail.events_for_plans(organization_id, [p.id for p in plans])
    names = _peer_names(organization_id, {p.created_by for p in plans})

    queue = {
        "pending_approval": [],
        "pending_verification": [],
        "total": len(plans),
        "today": today.isoformat(),
    }
    for plan in plans:
        item = plan_view(plan, today, events=events[plan.id])
        item["peer_name"] = names.get(plan.created_by)
        key = "pending_approval" if plan.status == PlanStatus.PLANNED.value else "pending_verification"
        queue[key].append(item)
    return queue
