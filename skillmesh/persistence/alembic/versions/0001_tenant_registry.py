"""add tenant registry, migration jobs, audit and operator key tables

Revision ID: 0001_tenant_registry
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_tenant_registry"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Authoritative tenant placement; version drives compare-and-swap updates.
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("isolation_tier", sa.String(), nullable=False),
        sa.Column("connection_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("pending_connection_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("placement_key", sa.String(), nullable=True),
        sa.Column("pending_placement_key", sa.String(), nullable=True),
        sa.Column("previous_connection_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("subscription_tier", sa.String(), nullable=False, server_default="starter"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("max_users", sa.Integer(), nullable=True),
        sa.Column("max_storage_gb", sa.Integer(), nullable=True),
        sa.Column(
            "compliance_flags_json",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("active_migration_id", sa.String(), nullable=True),
        sa.Column("write_freeze_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("placement_key", name="uq_tenants_placement_key"),
    )
    op.create_index("ix_tenants_slug", "tenants", ["slug"], unique=True)
    op.create_index("ix_tenants_status", "tenants", ["status"], unique=False)
    op.create_index("ix_tenants_pending_placement_key", "tenants", ["pending_placement_key"], unique=False)

    # One row per tier move; state history is append-only.
    op.create_table(
        "migration_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("source_tier", sa.String(), nullable=False),
        sa.Column("target_tier", sa.String(), nullable=False),
        sa.Column("source_descriptor_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("target_descriptor_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state_history_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("report_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("requested_by", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reclaim_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_migration_jobs_tenant_id", "migration_jobs", ["tenant_id"], unique=False)
    op.create_index(
        "ix_migration_jobs_tenant_started",
        "migration_jobs",
        ["tenant_id", "started_at"],
        unique=False,
    )
    op.create_index("ix_migration_jobs_status", "migration_jobs", ["status"], unique=False)

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_audit_events_tenant_occurred",
        "audit_events",
        ["tenant_id", "occurred_at"],
        unique=False,
    )
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)

    # Hashed operator keys for admin and ops endpoints.
    op.create_table(
        "operator_keys",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_operator_keys_key_hash", "operator_keys", ["key_hash"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_operator_keys_key_hash", table_name="operator_keys")
    op.drop_table("operator_keys")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_occurred", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_migration_jobs_status", table_name="migration_jobs")
    op.drop_index("ix_migration_jobs_tenant_started", table_name="migration_jobs")
    op.drop_index("ix_migration_jobs_tenant_id", table_name="migration_jobs")
    op.drop_table("migration_jobs")
    op.drop_index("ix_tenants_pending_placement_key", table_name="tenants")
    op.drop_index("ix_tenants_status", table_name="tenants")
    op.drop_index("ix_tenants_slug", table_name="tenants")
    op.drop_table("tenants")
