"""Initial timeclock schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

employee_role = postgresql.ENUM("ORG_ADMIN", "ORG_MANAGER", "EMPLOYEE", name="employee_role", create_type=False)
shift_status = postgresql.ENUM(
    "OPEN",
    "CLOSED",
    "STALE",
    "PENDING_REVISION",
    "REVISED",
    name="shift_status",
    create_type=False,
)
stale_resolution = postgresql.ENUM("FORGOT", "ACTUAL_HOURS", name="stale_resolution", create_type=False)
checkin_request_type = postgresql.ENUM("CLOCK_IN", "CLOCK_OUT", name="checkin_request_type", create_type=False)
checkin_request_status = postgresql.ENUM(
    "PENDING",
    "APPROVED",
    "DENIED",
    "AUTO_EXPIRED",
    name="checkin_request_status",
    create_type=False,
)
scheduled_notification_status = postgresql.ENUM(
    "PENDING",
    "SENT",
    "SKIPPED",
    "FAILED",
    name="scheduled_notification_status",
    create_type=False,
)
push_platform = postgresql.ENUM("IOS", "ANDROID", "WEB", name="push_platform", create_type=False)
audit_actor_type = postgresql.ENUM("EMPLOYEE", "MANAGER", "SYSTEM", name="audit_actor_type", create_type=False)

_ENUMS = (
    employee_role,
    shift_status,
    stale_resolution,
    checkin_request_type,
    checkin_request_status,
    scheduled_notification_status,
    push_platform,
    audit_actor_type,
)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "organizations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default=sa.text("'UTC'")),
        sa.Column("week_start_day", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("max_shift_hours", sa.Integer(), nullable=False, server_default=sa.text("16")),
        sa.Column("auto_break_threshold_hours", sa.Integer(), nullable=True),
        sa.Column("auto_break_minutes", sa.Integer(), nullable=True),
        sa.Column("overtime_threshold_hours", sa.Integer(), nullable=False, server_default=sa.text("40")),
        sa.Column("require_geofence", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        sa.CheckConstraint("week_start_day BETWEEN 0 AND 6", name="ck_organizations_week_start_day"),
    )

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("role", employee_role, nullable=False, server_default=sa.text("'EMPLOYEE'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_employees_organization_id", "employees", ["organization_id"])

    op.create_table(
        "teams",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("organization_id", "name", name="uq_teams_organization_name"),
    )
    op.create_index("ix_teams_organization_id", "teams", ["organization_id"])

    op.create_table(
        "team_members",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("team_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("team_id", "employee_id", name="uq_team_members_team_employee"),
    )
    op.create_index("ix_team_members_team_id", "team_members", ["team_id"])
    op.create_index("ix_team_members_employee_id", "team_members", ["employee_id"])

    op.create_table(
        "work_locations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("radius_m", sa.Float(), nullable=False, server_default=sa.text("200")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_work_locations_organization_id", "work_locations", ["organization_id"])

    op.create_table(
        "shifts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("location_id", sa.Integer(), nullable=True),
        sa.Column("status", shift_status, nullable=False),
        sa.Column("clock_in_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("clock_in_location", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("clock_in_verification", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("device_info", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("clock_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clock_out_location", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("break_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("net_duration_minutes", sa.Integer(), nullable=True),
        sa.Column("shift_date", sa.Date(), nullable=False),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("marked_stale_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stale_resolution", stale_resolution, nullable=True),
        sa.Column("is_revised", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("original_clock_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revision_reason", sa.Text(), nullable=True),
        sa.Column("revision_requested_by_id", sa.Integer(), nullable=True),
        sa.Column("revised_by_id", sa.Integer(), nullable=True),
        sa.Column("revised_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["location_id"], ["work_locations.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["revision_requested_by_id"], ["employees.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["revised_by_id"], ["employees.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_shifts_employee_id", "shifts", ["employee_id"])
    op.create_index("ix_shifts_status_clock_in_at", "shifts", ["status", "clock_in_at"])
    op.create_index("ix_shifts_organization_shift_date", "shifts", ["organization_id", "shift_date"])
    op.create_index(
        "uq_shifts_employee_open",
        "shifts",
        ["employee_id"],
        unique=True,
        postgresql_where=sa.text("status = 'OPEN'"),
    )

    op.create_table(
        "checkin_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("request_type", checkin_request_type, nullable=False),
        sa.Column("status", checkin_request_status, nullable=False),
        sa.Column("requested_location", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("distance_from_geofence_m", sa.Float(), nullable=True),
        sa.Column("nearest_location_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("requested_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_historical", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("shift_id", sa.Integer(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reviewed_by_id", sa.Integer(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_note", sa.Text(), nullable=True),
        sa.Column("denial_reason", sa.Text(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["nearest_location_id"], ["work_locations.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["shift_id"], ["shifts.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["reviewed_by_id"], ["employees.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_checkin_requests_employee_id", "checkin_requests", ["employee_id"])
    op.create_index("ix_checkin_requests_organization_id", "checkin_requests", ["organization_id"])
    op.create_index("ix_checkin_requests_status_expires_at", "checkin_requests", ["status", "expires_at"])

    op.create_table(
        "schedule_templates",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_schedule_templates_organization_id", "schedule_templates", ["organization_id"])

    op.create_table(
        "schedule_slots",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("template_id", sa.Integer(), nullable=False),
        sa.Column("weekday", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("crosses_midnight", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("break_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["template_id"], ["schedule_templates.id"], ondelete="CASCADE"),
        sa.CheckConstraint("weekday BETWEEN 0 AND 6", name="ck_schedule_slots_weekday"),
    )
    op.create_index("ix_schedule_slots_template_id", "schedule_slots", ["template_id"])

    op.create_table(
        "schedule_assignments",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("template_id", sa.Integer(), nullable=False),
        sa.Column("team_id", sa.Integer(), nullable=True),
        sa.Column("employee_id", sa.Integer(), nullable=True),
        sa.Column("effective_from", sa.Date(), nullable=True),
        sa.Column("effective_until", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        sa.ForeignKeyConstraint(["template_id"], ["schedule_templates.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "(team_id IS NULL) <> (employee_id IS NULL)",
            name="ck_schedule_assignments_single_target",
        ),
    )
    op.create_index("ix_schedule_assignments_template_id", "schedule_assignments", ["template_id"])
    op.create_index("ix_schedule_assignments_team_id", "schedule_assignments", ["team_id"])
    op.create_index("ix_schedule_assignments_employee_id", "schedule_assignments", ["employee_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column(
            "data",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("channel_id", sa.String(length=50), nullable=False, server_default=sa.text("'general'")),
        sa.Column("priority", sa.String(length=20), nullable=False, server_default=sa.text("'default'")),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("push_sent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("push_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("push_error", sa.Text(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_notifications_organization_id", "notifications", ["organization_id"])
    op.create_index("ix_notifications_employee_created_at", "notifications", ["employee_id", "created_at"])

    op.create_table(
        "scheduled_notifications",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("schedule_slot_id", sa.Integer(), nullable=True),
        sa.Column("notification_type", sa.String(length=50), nullable=False),
        sa.Column("notification_subtype", sa.String(length=50), nullable=False),
        sa.Column("local_date", sa.Date(), nullable=False),
        sa.Column("status", scheduled_notification_status, nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("skip_reason", sa.String(length=100), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("notification_id", sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["schedule_slot_id"], ["schedule_slots.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["notification_id"], ["notifications.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("idempotency_key", name="uq_scheduled_notifications_idempotency_key"),
    )
    op.create_index("ix_scheduled_notifications_employee_id", "scheduled_notifications", ["employee_id"])
    op.create_index("ix_scheduled_notifications_organization_id", "scheduled_notifications", ["organization_id"])

    op.create_table(
        "push_tokens",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("token", sa.String(length=1024), nullable=False),
        sa.Column("platform", push_platform, nullable=False),
        sa.Column("p256dh", sa.String(length=255), nullable=True),
        sa.Column("auth", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_reason", sa.String(length=100), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("token", name="uq_push_tokens_token"),
    )
    op.create_index("ix_push_tokens_employee_id", "push_tokens", ["employee_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("organization_id", sa.Integer(), nullable=True),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"])
    op.create_index("ix_audit_logs_organization_id", "audit_logs", ["organization_id"])


def downgrade() -> None:
    for table_name in (
        "audit_logs",
        "push_tokens",
        "scheduled_notifications",
        "notifications",
        "schedule_assignments",
        "schedule_slots",
        "schedule_templates",
        "checkin_requests",
        "shifts",
        "work_locations",
        "team_members",
        "teams",
        "employees",
        "organizations",
    ):
        op.drop_table(table_name)

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
