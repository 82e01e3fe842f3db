"""Create integration config and run ledger tables.

Revision ID: 001_integration_sync_tables
Revises:
Create Date: 2026-10-18

Creates the two tables owned by the sync engine:
- integration_configs: one row per (organization, provider)
- integration_runs: one row per sync attempt

The unique constraint on (organization_id, idempotency_key) is what the
run ledger's insert-if-absent targets. Composite indexes back the operator
listings (by status or provider, newest first) and the SLO window scans.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001_integration_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── integration_configs table ───────────────────────────────────────

    op.create_table(
        "integration_configs",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("organization_id", sa.String(64), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("credentials", JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column("settings", JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column("sync_cursor", sa.Text(), nullable=True),
        sa.Column("webhook_secret", sa.String(255), nullable=True),
        sa.Column("status", sa.String(16), server_default=sa.text("'ACTIVE'"), nullable=False),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("organization_id", "provider", name="uq_integration_configs_org_provider"),
    )

    # ── integration_runs table ──────────────────────────────────────────

    op.create_table(
        "integration_runs",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("organization_id", sa.String(64), nullable=False),
        sa.Column("integration_config_id", UUID(as_uuid=True), nullable=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("run_type", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), server_default=sa.text("'RUNNING'"), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("success_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("failure_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "organization_id",
            "idempotency_key",
            name="uq_integration_runs_org_idempotency_key",
        ),
    )
    op.create_index(
        "ix_integration_runs_org_status_started",
        "integration_runs",
        ["organization_id", "status", "started_at"],
    )
    op.create_index(
        "ix_integration_runs_org_provider_started",
        "integration_runs",
        ["organization_id", "provider", "started_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_integration_runs_org_provider_started", table_name="integration_runs")
    op.drop_index("ix_integration_runs_org_status_started", table_name="integration_runs")
    op.drop_table("integration_runs")
    op.drop_table("integration_configs")
