"""Service log baseline: organizations, users, service plans and events

Revision ID: a1s2l3e4n501
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa

revision = "a1s2l3e4n501"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "organizations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("reporting_timezone", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email", sa.String(200), nullable=False),
        sa.Column("full_name", sa.String(200)),
        sa.Column("status", sa.String(20), server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("organization_id", "email", name="uq_user_org_email"),
    )
    op.create_index("ix_users_organization_id", "users", ["organization_id"])

    op.create_table(
        "service_plans",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("created_by", sa.Integer(), nullable=False, index=True),
        sa.Column("service_type", sa.String(20), nullable=False),
        sa.Column("planned_date", sa.Date(), nullable=False, index=True),
        sa.Column("planned_time", sa.Time(), nullable=True),
        sa.Column("planned_duration_minutes", sa.Integer(), nullable=False),
        sa.Column("setting", sa.String(30), nullable=False),
        sa.Column("service_code", sa.String(20), nullable=True),
        sa.Column("participant_id", sa.String(64), nullable=True, index=True),
        sa.Column("lesson_id", sa.String(64), nullable=True),
        sa.Column("goal_id", sa.String(64), nullable=True),
        sa.Column("planning_notes", sa.Text(), nullable=True),
        sa.Column("actual_duration_minutes", sa.Integer(), nullable=True),
        sa.Column("attendance_count", sa.Integer(), nullable=True),
        sa.Column("delivered_as_planned", sa.Boolean(), nullable=True),
        sa.Column("deviation_notes", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.Integer(), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verified_by", sa.Integer(), nullable=True),
        sa.Column("session_note_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft", index=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("planned_duration_minutes > 0", name="ck_service_plans_planned_duration"),
        sa.CheckConstraint(
            "actual_duration_minutes IS NULL OR actual_duration_minutes > 0",
            name="ck_service_plans_actual_duration",
        ),
        sa.CheckConstraint("attendance_count IS NULL OR attendance_count >= 1", name="ck_service_plans_attendance"),
    )
    op.create_index("ix_service_plans_org_status", "service_plans", ["organization_id", "status"])
    op.create_index("ix_service_plans_org_creator", "service_plans", ["organization_id", "created_by"])

    op.create_table(
        "service_plan_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("service_plan_id", sa.String(36), sa.ForeignKey("service_plans.id"), nullable=False, index=True),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=False),
        sa.Column("actor_role", sa.String(20), nullable=False),
        sa.Column("actor_name_snapshot", sa.String(200), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("from_status", sa.String(20), nullable=True),
        sa.Column("to_status", sa.String(20), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_plan_events_plan_order", "service_plan_events", ["service_plan_id", "id"])
    op.create_index("ix_plan_events_org_action", "service_plan_events", ["organization_id", "action"])

    # Audit rows are append-only at the database level too (PostgreSQL only)
    if op.get_bind().dialect.name == "postgresql":
        op.execute("""
            CREATE OR REPLACE FUNCTION service_plan_events_immutable()
            RETURNS TRIGGER AS $$
            BEGIN
                RAISE EXCEPTION 'service_plan_events is append-only (% rejected)', TG_OP;
            END;
            $$ LANGUAGE plpgsql;
        """)
        op.execute("""
            CREATE TRIGGER service_plan_events_no_update_delete
                BEFORE UPDATE OR DELETE ON service_plan_events
                FOR EACH ROW
                EXECUTE FUNCTION service_plan_events_immutable();
        """)


def downgrade():
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS service_plan_events_no_update_delete ON service_plan_events")
        op.execute("DROP FUNCTION IF EXISTS service_plan_events_immutable()")
    op.drop_index("ix_plan_events_org_action", table_name="service_plan_events")
    op.drop_index("ix_plan_events_plan_order", table_name="service_plan_events")
    op.drop_table("service_plan_events")
    op.drop_index("ix_service_plans_org_creator", table_name="service_plans")
    op.drop_index("ix_service_plans_org_status", table_name="service_plans")
    op.drop_table("service_plans")
    op.drop_index("ix_users_organization_id", table_name="users")
    op.drop_table("users")
    op.drop_table("organizations")
