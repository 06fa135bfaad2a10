"""
Service Log — ServicePlan model and lifecycle rules.

A ServicePlan tracks one billable peer-support service:

    draft → planned → approved → completed → verified

plus two side edges: planned → draft (supervisor requests changes) and
cancellation from draft/planned (soft delete, terminal).

Column groups:
    planning      — editable only while status == draft
    delivery      — written once by the 'complete' transition
    verification  — written once by the 'verify' transition

``status`` is written only by services.plan_lifecycle through
services.plan_store.apply_update; nothing else assigns it.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from servicelog.core.actor import PEER, SUPERVISOR
from servicelog.models import db
from servicelog.models.audit import PlanAction
from servicelog.models.base import OrganizationModel
from servicelog.models.soft_delete import SoftDeleteMixin


# ── Constants ────────────────────────────────────────────────────────────────


class PlanStatus(str, Enum):
    DRAFT = "draft"
    PLANNED = "planned"
    APPROVED = "approved"
    COMPLETED = "completed"
    VERIFIED = "verified"


class ServiceType(str, Enum):
    INDIVIDUAL = "individual"
    GROUP = "group"


PLAN_STATUSES = frozenset(s.value for s in PlanStatus)
SERVICE_TYPES = frozenset(t.value for t in ServiceType)

SETTINGS = frozenset({
    "outpatient",
    "residential",
    "correctional",
    "hospital",
    "community",
    "telehealth",
    "home",
    "shelter",
    "recovery-housing",
    "school",
    "workplace",
    "other",
})

# Statuses a plan may be created in ("save as draft" vs "schedule directly")
INITIAL_STATUSES = (PlanStatus.DRAFT.value, PlanStatus.PLANNED.value)

MAX_DURATION_MINUTES = 24 * 60
SERVICE_CODE_MAX_LEN = 20

# List views → statuses they cover
VIEW_STATUSES = {
    "upcoming": (PlanStatus.DRAFT.value, PlanStatus.PLANNED.value, PlanStatus.APPROVED.value),
    "completed": (PlanStatus.COMPLETED.value, PlanStatus.VERIFIED.value),
    "review": (PlanStatus.PLANNED.value, PlanStatus.COMPLETED.value),
    "all": tuple(s.value for s in PlanStatus),
}

OVERDUE_STATUSES = (PlanStatus.PLANNED.value, PlanStatus.APPROVED.value)

# Action → rule.  "to" is None when the action leaves status unchanged.
#   role       : the only role allowed to perform the action
#   owner_only : actor must be the peer who created the plan
#   event      : audit action appended on success
PLAN_TRANSITIONS = {
    "submit": {
        "from": [PlanStatus.DRAFT.value], "to": PlanStatus.PLANNED.value,
        "role": PEER, "owner_only": True, "event": PlanAction.SUBMITTED.value,
    },
    "approve": {
        "from": [PlanStatus.PLANNED.value], "to": PlanStatus.APPROVED.value,
        "role": SUPERVISOR, "owner_only": False, "event": PlanAction.APPROVED.value,
    },
    "comment": {
        "from": [PlanStatus.PLANNED.value, PlanStatus.COMPLETED.value], "to": None,
        "role": SUPERVISOR, "owner_only": False, "event": PlanAction.COMMENTED.value,
    },
    "request-change": {
        "from": [PlanStatus.PLANNED.value], "to": PlanStatus.DRAFT.value,
        "role": SUPERVISOR, "owner_only": False, "event": PlanAction.CHANGE_REQUESTED.value,
    },
    "complete": {
        "from": [PlanStatus.PLANNED.value, PlanStatus.APPROVED.value], "to": PlanStatus.COMPLETED.value,
        "role": PEER, "owner_only": True, "event": PlanAction.COMPLETED.value,
    },
    "verify": {
        "from": [PlanStatus.COMPLETED.value], "to": PlanStatus.VERIFIED.value,
        "role": SUPERVISOR, "owner_only": False, "event": PlanAction.VERIFIED.value,
    },
    "cancel": {
        "from": [PlanStatus.DRAFT.value, PlanStatus.PLANNED.value], "to": None,
        "role": PEER, "owner_only": True, "event": PlanAction.DELETED.value,
    },
    "edit": {
        "from": [PlanStatus.DRAFT.value], "to": None,
        "role": PEER, "owner_only": True, "event": PlanAction.UPDATED.value,
    },
    "link-note": {
        "from": [PlanStatus.COMPLETED.value, PlanStatus.VERIFIED.value], "to": None,
        "role": PEER, "owner_only": True, "event": PlanAction.NOTE_LINKED.value,
    },
}

# Audit action → status it moves a plan into (replay table).
EVENT_TARGET_STATUS = {
    rule["event"]: rule["to"] for rule in PLAN_TRANSITIONS.values() if rule["to"] is not None
}

# Rule wording used when a transition is attempted from the wrong state.
STATE_RULES = {
    "submit": "only draft plans can be submitted for review",
    "approve": "only planned services awaiting review can be approved",
    "comment": "comments can only be added while a plan awaits a supervisor decision",
    "request-change": "changes can only be requested on planned services awaiting review",
    "complete": "only planned or approved services can be completed",
    "verify": "cannot verify a plan that has not been completed",
    "cancel": "only draft or planned services can be deleted",
    "edit": "planning details can only be edited while the plan is a draft",
    "link-note": "a session note can only be linked once the service is completed",
}

PLANNING_FIELDS = (
    "service_type",
    "planned_date",
    "planned_time",
    "planned_duration_minutes",
    "setting",
    "service_code",
    "participant_id",
    "lesson_id",
    "goal_id",
    "planning_notes",
)

DELIVERY_FIELDS = (
    "actual_duration_minutes",
    "attendance_count",
    "delivered_as_planned",
    "deviation_notes",
    "completed_at",
    "completed_by",
)


def validate_plan_transition(old_status, action):
    """Return True if ``action`` may be applied to a plan in ``old_status``."""
    rule = PLAN_TRANSITIONS.get(action)
    return bool(rule) and old_status in rule["from"]


def _uuid():
    return str(uuid.uuid4())


class ServicePlan(SoftDeleteMixin, OrganizationModel):
    """
    One planned peer-support service.

    Business rules:
    - created_by owns the plan: only that peer may edit, submit, complete,
      cancel it or link its session note.
    - Delivery and verification columns are written exactly once.
    - deviation_notes is set iff delivered_as_planned is False.
    - ``version`` is the optimistic-lock counter; every write bumps it so two
      racing transitions on the same plan cannot both commit.
    """

    __tablename__ = "service_plans"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    created_by = db.Column(db.Integer, nullable=False, index=True, comment="Owning peer (external id)")

    # ── Planning ─────────────────────────────────────────────────────
    service_type = db.Column(db.String(20), nullable=False, comment="individual | group")
    planned_date = db.Column(db.Date, nullable=False, index=True)
    planned_time = db.Column(db.Time, nullable=True)
    planned_duration_minutes = db.Column(db.Integer, nullable=False)
    setting = db.Column(db.String(30), nullable=False)
    service_code = db.Column(db.String(SERVICE_CODE_MAX_LEN), nullable=True, comment="e.g. H0038")
    participant_id = db.Column(db.String(64), nullable=True, index=True)
    lesson_id = db.Column(db.String(64), nullable=True)
    goal_id = db.Column(db.String(64), nullable=True)
    planning_notes = db.Column(db.Text, nullable=True)

    # ── Delivery (set once by 'complete') ────────────────────────────
    actual_duration_minutes = db.Column(db.Integer, nullable=True)
    attendance_count = db.Column(db.Integer, nullable=True)
    delivered_as_planned = db.Column(db.Boolean, nullable=True)
    deviation_notes = db.Column(db.Text, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.Integer, nullable=True)

    # ── Verification (set once by 'verify') ──────────────────────────
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_by = db.Column(db.Integer, nullable=True)

    session_note_id = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(20), nullable=False, default=PlanStatus.DRAFT.value, index=True)
    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.Index("ix_service_plans_org_status", "organization_id", "status"),
        db.Index("ix_service_plans_org_creator", "organization_id", "created_by"),
        db.CheckConstraint("planned_duration_minutes > 0", name="ck_service_plans_planned_duration"),
        db.CheckConstraint(
            "actual_duration_minutes IS NULL OR actual_duration_minutes > 0",
            name="ck_service_plans_actual_duration",
        ),
        db.CheckConstraint(
            "attendance_count IS NULL OR attendance_count >= 1",
            name="ck_service_plans_attendance",
        ),
    )

    def is_overdue(self, today) -> bool:
        """Derived flag: planned/approved and the planned date has passed."""
        return (
            not self.is_deleted
            and self.status in OVERDUE_STATUSES
            and self.planned_date is not None
            and self.planned_date < today
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "created_by": self.created_by,
            "status": self.status,
            "service_type": self.service_type,
            "planned_date": self.planned_date.isoformat() if self.planned_date else None,
            "planned_time": self.planned_time.strftime("%H:%M") if self.planned_time else None,
            "planned_duration_minutes": self.planned_duration_minutes,
            "setting": self.setting,
            "service_code": self.service_code,
            "participant_id": self.participant_id,
            "lesson_id": self.lesson_id,
            "goal_id": self.goal_id,
            "planning_notes": self.planning_notes,
            "actual_duration_minutes": self.actual_duration_minutes,
            "attendance_count": self.attendance_count,
            "delivered_as_planned": self.delivered_as_planned,
            "deviation_notes": self.deviation_notes,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completed_by": self.completed_by,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "verified_by": self.verified_by,
            "session_note_id": self.session_note_id,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ServicePlan {self.id} {self.status}>"
