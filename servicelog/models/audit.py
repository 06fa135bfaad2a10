"""
Service Log — audit trail model.

Models:
    - ServicePlanEvent: immutable, append-only record of every action taken
      on a service plan.

Rows are never updated or deleted.  Insertion order (``id``) is the
authoritative order of events for a plan; replaying the sequence must
reproduce the plan's current status (see services.audit_trail).
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import event

from servicelog.core.exceptions import ImmutableRecordError
from servicelog.models import db
from servicelog.models.base import OrganizationModel


class PlanAction(str, Enum):
    """Audit actions.  Every successful engine call appends exactly one."""

    CREATED = "created"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    CHANGE_REQUESTED = "change_requested"
    COMMENTED = "commented"
    COMPLETED = "completed"
    VERIFIED = "verified"
    DELETED = "deleted"
    UPDATED = "updated"
    NOTE_LINKED = "note_linked"


AUDIT_ACTIONS = frozenset(a.value for a in PlanAction)


class ServicePlanEvent(OrganizationModel):
    """
    One row per state-changing action on a ServicePlan.

    Business rules:
    - Append-only: ORM updates and deletes raise ImmutableRecordError.
    - actor_name_snapshot is captured at write time so the trail stays
      readable if the user directory changes later.
    - from_status / to_status record the edge that was applied; for
      non-status actions (comment, edit, note link) they are equal.
    """

    __tablename__ = "service_plan_events"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    service_plan_id = db.Column(
        db.String(36),
        db.ForeignKey("service_plans.id"),
        nullable=False,
        index=True,
    )

    action = db.Column(
        db.String(30), nullable=False,
        comment="created | submitted | approved | change_requested | commented | ...",
    )
    actor_id = db.Column(db.Integer, nullable=False, comment="External identity id, no FK")
    actor_role = db.Column(db.String(20), nullable=False, comment="peer | supervisor")
    actor_name_snapshot = db.Column(db.String(200), nullable=True)

    comment = db.Column(db.Text, nullable=True)
    from_status = db.Column(db.String(20), nullable=True, comment="NULL for 'created'")
    to_status = db.Column(db.String(20), nullable=False)
    details = db.Column(db.JSON, nullable=True, comment="e.g. changed field names for 'updated'")

    occurred_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_plan_events_plan_order", "service_plan_id", "id"),
        db.Index("ix_plan_events_org_action", "organization_id", "action"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "service_plan_id": self.service_plan_id,
            "organization_id": self.organization_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "actor_name": self.actor_name_snapshot,
            "comment": self.comment,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "details": self.details or {},
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
        }

    def __repr__(self):
        return f"<ServicePlanEvent {self.id}: {self.action} on {self.service_plan_id}>"


# ── Immutability guards ─────────────────────────────────────────────────────


@event.listens_for(ServicePlanEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    raise ImmutableRecordError("ServicePlanEvent", target.id, "update")


@event.listens_for(ServicePlanEvent, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise ImmutableRecordError("ServicePlanEvent", target.id, "delete")
