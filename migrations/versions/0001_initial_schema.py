"""initial schema: auth, directory, timesheets, invoices, email queue

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=False), nullable=nullable)


def upgrade() -> None:
    bind = op.get_bind()
    existing_tables = set(inspect(bind).get_table_names())

    # ---------- Auth / RBAC / audit ----------
    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("email", sa.String(length=320), nullable=False, unique=True),
            sa.Column("name", sa.String(length=255), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            _ts("last_login_at", nullable=True),
            _ts("deleted_at", nullable=True),
        )

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(length=64), nullable=False, unique=True),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("created_at"),
        )

    if "permissions" not in existing_tables:
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(length=128), nullable=False, unique=True),
            sa.Column("name", sa.String(length=128), nullable=False),
            _ts("created_at"),
        )

    if "user_roles" not in existing_tables:
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        )

    if "role_permissions" not in existing_tables:
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column(
                "permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True
            ),
        )

    if "role_timesheet_visibility" not in existing_tables:
        op.create_table(
            "role_timesheet_visibility",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            _ts("created_at"),
            sa.UniqueConstraint("role_id", "user_id", name="uq_role_timesheet_visibility"),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            _ts("created_at"),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("client_ip", sa.String(length=64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_user_email", sa.String(length=320), nullable=True),
            sa.Column("action", sa.String(length=128), nullable=False),
            sa.Column("entity_type", sa.String(length=128), nullable=True),
            sa.Column("entity_id", sa.String(length=128), nullable=True),
            sa.Column("reason", sa.String(length=512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
        op.create_index("idx_audit_events_created_at", "audit_events", ["created_at"])
        op.create_index("idx_audit_events_entity", "audit_events", ["entity_type", "entity_id"])

    # ---------- Directory ----------
    if "insurance" not in existing_tables:
        op.create_table(
            "insurance",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False, unique=True),
            sa.Column("rate_per_unit", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("regular_rate_per_unit", sa.Numeric(10, 2), nullable=True),
            sa.Column("bcba_rate_per_unit", sa.Numeric(10, 2), nullable=True),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            _ts("updated_at"),
        )

    if "clients" not in existing_tables:
        op.create_table(
            "clients",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("medicaid_id", sa.String(length=64), nullable=True),
            sa.Column("address", sa.Text(), nullable=True),
            sa.Column("phone", sa.String(length=64), nullable=True),
            sa.Column("email", sa.String(length=320), nullable=True),
            sa.Column("insurance_id", sa.Integer(), sa.ForeignKey("insurance.id", ondelete="SET NULL"), nullable=True),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            _ts("updated_at"),
            _ts("deleted_at", nullable=True),
        )
        op.create_index("idx_clients_name", "clients", ["name"])
        op.create_index("idx_clients_active", "clients", ["active"])

    if "providers" not in existing_tables:
        op.create_table(
            "providers",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("email", sa.String(length=320), nullable=True),
            sa.Column("phone", sa.String(length=64), nullable=True),
            sa.Column("kind", sa.String(length=16), nullable=False, server_default="RBT"),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            _ts("updated_at"),
            _ts("deleted_at", nullable=True),
        )
        op.create_index("idx_providers_name", "providers", ["name"])
        op.create_index("idx_providers_kind", "providers", ["kind"])

    # ---------- Invoices (before timesheets: timesheets.invoice_id points here) ----------
    if "invoices" not in existing_tables:
        op.create_table(
            "invoices",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("invoice_number", sa.String(length=32), nullable=False, unique=True),
            sa.Column("client_id", sa.Integer(), sa.ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=False),
            sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("paid_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("adjustments", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("outstanding", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="DRAFT"),
            sa.Column(
                "created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
            ),
            _ts("sent_at", nullable=True),
            sa.Column("view_token", sa.String(length=64), nullable=True, unique=True),
            _ts("token_expires_at", nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            _ts("deleted_at", nullable=True),
        )
        op.create_index("idx_invoices_client", "invoices", ["client_id"])
        op.create_index("idx_invoices_status", "invoices", ["status"])
        op.create_index("idx_invoices_period", "invoices", ["start_date", "end_date"])

    # ---------- Timesheets ----------
    if "timesheets" not in existing_tables:
        op.create_table(
            "timesheets",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("timesheet_number", sa.String(length=32), nullable=False, unique=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("provider_id", sa.Integer(), sa.ForeignKey("providers.id", ondelete="RESTRICT"), nullable=True),
            sa.Column("client_id", sa.Integer(), sa.ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("bcba_id", sa.Integer(), sa.ForeignKey("providers.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("insurance_id", sa.Integer(), sa.ForeignKey("insurance.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("is_bcba", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("service_type", sa.String(length=64), nullable=True),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=False),
            sa.Column("timezone", sa.String(length=64), nullable=False, server_default="America/New_York"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="DRAFT"),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            _ts("submitted_at", nullable=True),
            _ts("approved_at", nullable=True),
            _ts("rejected_at", nullable=True),
            _ts("queued_at", nullable=True),
            _ts("emailed_at", nullable=True),
            sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True),
            _ts("invoiced_at", nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            _ts("deleted_at", nullable=True),
        )
        op.create_index("idx_timesheets_user", "timesheets", ["user_id"])
        op.create_index("idx_timesheets_client", "timesheets", ["client_id"])
        op.create_index("idx_timesheets_status", "timesheets", ["status"])
        op.create_index("idx_timesheets_dates", "timesheets", ["start_date", "end_date"])
        op.create_index("idx_timesheets_invoice", "timesheets", ["invoice_id"])

    if "timesheet_entries" not in existing_tables:
        op.create_table(
            "timesheet_entries",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column(
                "timesheet_id", sa.Integer(), sa.ForeignKey("timesheets.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column("date", sa.Date(), nullable=False),
            sa.Column("start_time", sa.String(length=5), nullable=False),
            sa.Column("end_time", sa.String(length=5), nullable=False),
            sa.Column("minutes", sa.Integer(), nullable=False),
            sa.Column("units", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("notes", sa.String(length=255), nullable=True),
            sa.Column("invoiced", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("created_at"),
        )
        op.create_index("idx_timesheet_entries_timesheet", "timesheet_entries", ["timesheet_id"])
        op.create_index("idx_timesheet_entries_date", "timesheet_entries", ["date"])
        op.create_index("idx_timesheet_entries_invoiced", "timesheet_entries", ["invoiced"])

    # ---------- Invoice lines / money movements ----------
    if "invoice_entries" not in existing_tables:
        op.create_table(
            "invoice_entries",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
            sa.Column(
                "timesheet_id", sa.Integer(), sa.ForeignKey("timesheets.id", ondelete="RESTRICT"), nullable=False
            ),
            sa.Column(
                "timesheet_entry_id",
                sa.Integer(),
                sa.ForeignKey("timesheet_entries.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("provider_id", sa.Integer(), sa.ForeignKey("providers.id", ondelete="SET NULL"), nullable=True),
            sa.Column("insurance_id", sa.Integer(), sa.ForeignKey("insurance.id", ondelete="SET NULL"), nullable=True),
            sa.Column("service_date", sa.Date(), nullable=False),
            sa.Column("notes", sa.String(length=255), nullable=True),
            sa.Column("minutes", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("units", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("billable_units", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("rate", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
            _ts("created_at"),
        )
        op.create_index("idx_invoice_entries_invoice", "invoice_entries", ["invoice_id"])
        op.create_index("idx_invoice_entries_timesheet", "invoice_entries", ["timesheet_id"])

    if "payments" not in existing_tables:
        op.create_table(
            "payments",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("payment_date", sa.Date(), nullable=False),
            sa.Column("reference_number", sa.String(length=128), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column(
                "created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
            ),
            _ts("created_at"),
        )
        op.create_index("idx_payments_invoice", "payments", ["invoice_id"])

    if "invoice_adjustments" not in existing_tables:
        op.create_table(
            "invoice_adjustments",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("reason", sa.Text(), nullable=False),
            sa.Column(
                "created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
            ),
            _ts("created_at"),
        )
        op.create_index("idx_invoice_adjustments_invoice", "invoice_adjustments", ["invoice_id"])

    if "scheduled_job_runs" not in existing_tables:
        op.create_table(
            "scheduled_job_runs",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            _ts("started_at"),
            _ts("finished_at", nullable=True),
            sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("period_start", sa.Date(), nullable=True),
            sa.Column("period_end", sa.Date(), nullable=True),
            sa.Column("period_label", sa.String(length=64), nullable=True),
            sa.Column("invoices_created", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("clients_processed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("errors_json", sa.Text(), nullable=True),
        )
        op.create_index("idx_scheduled_job_runs_job_started", "scheduled_job_runs", ["job_name", "started_at"])

    # ---------- Email queue ----------
    if "email_queue_items" not in existing_tables:
        op.create_table(
            "email_queue_items",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("entity_type", sa.String(length=16), nullable=False),
            sa.Column("entity_id", sa.Integer(), nullable=False),
            sa.Column(
                "queued_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
            ),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="QUEUED"),
            sa.Column("batch_id", sa.String(length=64), nullable=True),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            _ts("queued_at"),
            _ts("sent_at", nullable=True),
            _ts("deleted_at", nullable=True),
            sa.UniqueConstraint("entity_type", "entity_id", name="uq_email_queue_entity"),
        )
        op.create_index("idx_email_queue_status", "email_queue_items", ["status"])
        op.create_index("idx_email_queue_batch", "email_queue_items", ["batch_id"])


def downgrade() -> None:
    for table in (
        "email_queue_items",
        "scheduled_job_runs",
        "invoice_adjustments",
        "payments",
        "invoice_entries",
        "timesheet_entries",
        "timesheets",
        "invoices",
        "providers",
        "clients",
        "insurance",
        "audit_events",
        "role_timesheet_visibility",
        "role_permissions",
        "user_roles",
        "permissions",
        "roles",
        "users",
    ):
        op.drop_table(table)
