"""Initial schema for ledgersync.

Revision ID: 5f0c2a91d7e3
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5f0c2a91d7e3"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

STAGING_TABLES = (
    "stg_accounts",
    "stg_tracking_categories",
    "stg_contacts",
    "stg_items",
    "stg_invoices",
    "stg_payments",
    "stg_credit_notes",
    "stg_bank_accounts",
    "stg_bank_transactions",
    "stg_manual_journals",
)


def _timestamp(name: str, nullable: bool = True, default_now: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()") if default_now else None,
        nullable=nullable,
    )


def upgrade() -> None:
    op.create_table(
        "sync_checkpoints",
        sa.Column("entity_type", sa.String(length=50), primary_key=True, nullable=False),
        sa.Column(
            "cursor",
            sa.DateTime(timezone=True),
            server_default=sa.text("'1970-01-01 00:00:00+00'"),
            nullable=False,
        ),
        sa.Column("has_more_records", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("status", sa.String(length=20), server_default="idle", nullable=False),
        sa.Column("claim_id", sa.String(length=36), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("consecutive_error_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("rate_limit_hit_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("records_processed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_sync_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("average_duration_seconds", sa.Float(), server_default=sa.text("0"), nullable=False),
        _timestamp("last_sync_started_at"),
        _timestamp("last_sync_completed_at"),
        _timestamp("last_successful_sync_at"),
        _timestamp("updated_at", nullable=False, default_now=True),
        sa.CheckConstraint(
            "status IN ('idle', 'running', 'completed', 'error')",
            name="ck_sync_checkpoints_status",
        ),
        if_not_exists=True,
    )

    op.create_table(
        "sync_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("session_type", sa.String(length=20), nullable=False),
        sa.Column("scope", sa.String(length=20), nullable=False),
        sa.Column("target_entities", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), server_default="running", nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("initiated_by", sa.String(length=255), nullable=False),
        _timestamp("started_at", nullable=False),
        _timestamp("completed_at"),
        sa.Column("total_duration_seconds", sa.Float(), nullable=True),
        sa.Column("total_records_processed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_api_calls", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("success_rate", sa.Float(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        _timestamp("created_at", nullable=False, default_now=True),
        if_not_exists=True,
    )
    op.create_index(
        "ix_sync_sessions_status", "sync_sessions", ["status"], if_not_exists=True
    )
    op.create_index(
        "ix_sync_sessions_started_at",
        "sync_sessions",
        [sa.text("started_at DESC")],
        if_not_exists=True,
    )

    op.create_table(
        "sync_session_leases",
        sa.Column("tenant_id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("session_id", sa.String(length=36), nullable=True),
        _timestamp("acquired_at"),
        if_not_exists=True,
    )

    op.create_table(
        "sync_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "session_id",
            sa.String(length=36),
            sa.ForeignKey("sync_sessions.id"),
            nullable=False,
        ),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        _timestamp("started_at", nullable=False),
        _timestamp("completed_at", nullable=False),
        sa.Column("duration_seconds", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("records_requested", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("records_received", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("records_processed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("records_inserted", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("records_updated", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("records_unchanged", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("records_failed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("api_calls_made", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("rate_limit_hits", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("error_details", sa.JSON(), nullable=True),
        _timestamp("created_at", nullable=False, default_now=True),
        if_not_exists=True,
    )
    op.create_index("ix_sync_logs_session_id", "sync_logs", ["session_id"], if_not_exists=True)

    op.create_table(
        "sync_audit_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("session_id", sa.String(length=36), nullable=True),
        sa.Column("entity_type", sa.String(length=50), nullable=True),
        sa.Column("actor", sa.String(length=255), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        _timestamp("created_at", nullable=False, default_now=True),
        if_not_exists=True,
    )
    op.create_index(
        "ix_sync_audit_events_event_type",
        "sync_audit_events",
        ["event_type"],
        if_not_exists=True,
    )

    for table_name in STAGING_TABLES:
        op.create_table(
            table_name,
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("external_id", sa.String(length=64), nullable=False),
            _timestamp("updated_date_utc", nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("payload_hash", sa.String(length=64), nullable=False),
            sa.Column("session_id", sa.String(length=36), nullable=True),
            _timestamp("created_at", nullable=False, default_now=True),
            _timestamp("updated_at", nullable=False, default_now=True),
            sa.UniqueConstraint("external_id", name=f"uq_{table_name}_external_id"),
            if_not_exists=True,
        )


def downgrade() -> None:
    for table_name in reversed(STAGING_TABLES):
        op.drop_table(table_name, if_exists=True)
    op.drop_table("sync_audit_events", if_exists=True)
    op.drop_table("sync_logs", if_exists=True)
    op.drop_table("sync_session_leases", if_exists=True)
    op.drop_table("sync_sessions", if_exists=True)
    op.drop_table("sync_checkpoints", if_exists=True)
