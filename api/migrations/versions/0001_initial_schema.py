"""Initial schema: tickets, snapshots, aggregates, config and ledgers

Revision ID: a1c3e5f70001
Revises:
Create Date: 2026-10-18 00:01:00.000000

Creates every table the ingestion and retention jobs use:
- tickets, company_cache, group_cache: synced helpdesk data
- weekly_snapshots with group_resolutions and ticket_snapshots children
- monthly_ticket_aggregates: compressed history, unique per (year, month, partner)
- retention_audit_logs, job_executions, audit_logs, activity_logs: ledgers
- system_config: key/value store, values optionally encrypted

Written manually (not via autogenerate) consistent with project migration policy.
"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a1c3e5f70001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column("id", sa.Uuid(), primary_key=True)


def _counter(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), nullable=False, server_default="0")


def upgrade() -> None:
    op.create_table(
        "tickets",
        _id(),
        sa.Column("external_id", sa.BigInteger(), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.BigInteger(), nullable=True),
        sa.Column("company_id", sa.BigInteger(), nullable=True),
        sa.Column("requester_id", sa.BigInteger(), nullable=True),
        sa.Column("responder_id", sa.BigInteger(), nullable=True),
        sa.Column("ticket_type", sa.String(100), nullable=True),
        sa.Column("is_escalated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("external_id", name="uq_tickets_external_id"),
    )
    op.create_index("ix_tickets_group_id", "tickets", ["group_id"])
    op.create_index("ix_tickets_company_id", "tickets", ["company_id"])
    op.create_index("ix_tickets_created_at", "tickets", ["created_at"])

    for table in ("company_cache", "group_cache"):
        op.create_table(
            table,
            sa.Column("external_id", sa.BigInteger(), primary_key=True, autoincrement=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )

    op.create_table(
        "weekly_snapshots",
        _id(),
        sa.Column("snapshot_id", sa.String(32), nullable=False),
        sa.Column("week_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("week_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="Asia/Kolkata"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("tickets_created", sa.Integer(), nullable=False),
        sa.Column("tickets_resolved", sa.Integer(), nullable=False),
        sa.Column("tickets_closed", sa.Integer(), nullable=False),
        sa.Column("priority_urgent", sa.Integer(), nullable=False),
        sa.Column("priority_high", sa.Integer(), nullable=False),
        sa.Column("priority_medium", sa.Integer(), nullable=False),
        sa.Column("priority_low", sa.Integer(), nullable=False),
        sa.Column("average_resolution_hours", sa.Float(), nullable=True),
        sa.Column("customer_max_tickets_company_id", sa.BigInteger(), nullable=True),
        sa.Column("customer_max_tickets_company_name", sa.String(255), nullable=True),
        sa.Column("customer_max_tickets_count", sa.Integer(), nullable=True),
        _counter("se_unresolved_open"),
        _counter("se_unresolved_pending"),
        _counter("ps_unresolved_open"),
        _counter("ps_unresolved_pending"),
        _counter("ps_unresolved_marked_for_release"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("snapshot_id", name="uq_weekly_snapshots_snapshot_id"),
    )
    op.create_index("ix_weekly_snapshots_week_end", "weekly_snapshots", ["week_end"])
    op.create_index("ix_weekly_snapshots_expires_at", "weekly_snapshots", ["expires_at"])

    op.create_table(
        "group_resolutions",
        _id(),
        sa.Column(
            "snapshot_id",
            sa.String(32),
            sa.ForeignKey("weekly_snapshots.snapshot_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("group_id", sa.BigInteger(), nullable=False),
        sa.Column("group_name", sa.String(255), nullable=False),
        sa.Column("tickets_resolved", sa.Integer(), nullable=False),
        sa.Column("tickets_open", sa.Integer(), nullable=False),
        sa.Column("tickets_pending", sa.Integer(), nullable=False),
    )
    op.create_index("ix_group_resolutions_snapshot_id", "group_resolutions", ["snapshot_id"])

    op.create_table(
        "ticket_snapshots",
        _id(),
        sa.Column(
            "snapshot_id",
            sa.String(32),
            sa.ForeignKey("weekly_snapshots.snapshot_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_id", sa.BigInteger(), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("status", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.BigInteger(), nullable=True),
        sa.Column("company_id", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_escalated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("tags", sa.JSON(), nullable=False),
    )
    op.create_index("ix_ticket_snapshots_snapshot_id", "ticket_snapshots", ["snapshot_id"])

    op.create_table(
        "monthly_ticket_aggregates",
        _id(),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("partner_id", sa.BigInteger(), nullable=True),
        sa.Column("partner_name", sa.String(255), nullable=True),
        _counter("total_tickets"),
        _counter("open_tickets"),
        _counter("resolved_tickets"),
        _counter("closed_tickets"),
        sa.Column("avg_resolution_hours", sa.Float(), nullable=True),
        sa.Column("median_resolution_hours", sa.Float(), nullable=True),
        _counter("priority_urgent"),
        _counter("priority_high"),
        _counter("priority_medium"),
        _counter("priority_low"),
        _counter("data_loss_tickets"),
        _counter("sync_failure_tickets"),
        _counter("how_to_tickets"),
        _counter("training_tickets"),
        _counter("compressed_from_count"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("year", "month", "partner_id", name="uq_monthly_aggregate_key"),
    )
    op.create_index(
        "ix_monthly_aggregate_year_month", "monthly_ticket_aggregates", ["year", "month"]
    )
    op.create_index(
        "ix_monthly_ticket_aggregates_partner_id", "monthly_ticket_aggregates", ["partner_id"]
    )

    op.create_table(
        "retention_audit_logs",
        _id(),
        sa.Column("target_type", sa.String(32), nullable=False),
        sa.Column("target_id", sa.String(64), nullable=False),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("details", sa.Text(), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_retention_audit_logs_target_id", "retention_audit_logs", ["target_id"])
    op.create_index("ix_retention_audit_logs_executed_at", "retention_audit_logs", ["executed_at"])

    op.create_table(
        "job_executions",
        _id(),
        sa.Column("job_id", sa.String(64), nullable=False),
        sa.Column("job_name", sa.String(64), nullable=False),
        sa.Column("trigger_source", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("snapshot_id", sa.String(32), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("counts", sa.JSON(), nullable=True),
        sa.UniqueConstraint("job_id", name="uq_job_executions_job_id"),
    )
    op.create_index("ix_job_executions_job_name", "job_executions", ["job_name"])

    op.create_table(
        "system_config",
        sa.Column("key", sa.String(128), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("encrypted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_by", sa.String(255), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "activity_logs",
        _id(),
        sa.Column("activity_type", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_activity_logs_activity_type", "activity_logs", ["activity_type"])

    op.create_table(
        "audit_logs",
        _id(),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("actor", sa.String(128), nullable=False, server_default="system"),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_activity_logs_activity_type", table_name="activity_logs")
    op.drop_table("activity_logs")
    op.drop_table("system_config")
    op.drop_index("ix_job_executions_job_name", table_name="job_executions")
    op.drop_table("job_executions")
    op.drop_index("ix_retention_audit_logs_executed_at", table_name="retention_audit_logs")
    op.drop_index("ix_retention_audit_logs_target_id", table_name="retention_audit_logs")
    op.drop_table("retention_audit_logs")
    op.drop_index("ix_monthly_ticket_aggregates_partner_id", table_name="monthly_ticket_aggregates")
    op.drop_index("ix_monthly_aggregate_year_month", table_name="monthly_ticket_aggregates")
    op.drop_table("monthly_ticket_aggregates")
    op.drop_index("ix_ticket_snapshots_snapshot_id", table_name="ticket_snapshots")
    op.drop_table("ticket_snapshots")
    op.drop_index("ix_group_resolutions_snapshot_id", table_name="group_resolutions")
    op.drop_table("group_resolutions")
    op.drop_index("ix_weekly_snapshots_expires_at", table_name="weekly_snapshots")
    op.drop_index("ix_weekly_snapshots_week_end", table_name="weekly_snapshots")
    op.drop_table("weekly_snapshots")
    op.drop_table("group_cache")
    op.drop_table("company_cache")
    op.drop_index("ix_tickets_created_at", table_name="tickets")
    op.drop_index("ix_tickets_company_id", table_name="tickets")
    op.drop_index("ix_tickets_group_id", table_name="tickets")
    op.drop_table("tickets")
