"""
OrganizationModel — abstract base class for organization-scoped tables.

Every table that holds organization data inherits from OrganizationModel
instead of db.Model directly. This adds:
  - organization_id FK column with index
  - scoped_select(organization_id) classmethod
"""

from sqlalchemy import select

from servicelog.models import db


class OrganizationModel(db.Model):
    """Abstract base for organization-scoped tables."""
    __abstract__ = True

    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def scoped_select(cls, organization_id):
        """Return a SELECT already filtered by organization_id."""
        return select(cls).where(cls.organization_id == organization_id)
