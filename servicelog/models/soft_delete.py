"""
Soft Delete Mixin.

Cancelled service plans are never removed physically: their audit trail
references the row, so cancellation stamps ``deleted_at`` instead.

Usage:
    class ServicePlan(SoftDeleteMixin, OrganizationModel):
        ...

    plan.soft_delete(now)
    stmt = select(ServicePlan).where(ServicePlan.active_clause())
"""

from datetime import datetime, timezone

from servicelog.models import db


class SoftDeleteMixin:
    """Mixin that adds a ``deleted_at`` tombstone to a model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self, when=None):
        """Mark this record as deleted (idempotent for the first timestamp)."""
        if self.deleted_at is None:
            self.deleted_at = when or datetime.now(timezone.utc)

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def active_clause(cls):
        """WHERE clause excluding soft-deleted rows."""
        return cls.deleted_at.is_(None)
