"""rbac reference tables, scan runs, findings and audit events

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "contexts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("contextlevel", sa.Integer(), nullable=False),
        sa.Column("path", sa.String(), nullable=False),
        sa.Column("parent_id", sa.BigInteger(), sa.ForeignKey("contexts.id"), nullable=True),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
    )
    op.create_index("ix_contexts_contextlevel", "contexts", ["contextlevel"], unique=False)
    # varchar_pattern_ops lets LIKE 'prefix/%' subtree lookups use the index.
    op.create_index(
        "ix_contexts_path",
        "contexts",
        ["path"],
        unique=False,
        postgresql_ops={"path": "varchar_pattern_ops"},
    )

    op.create_table(
        "roles",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("shortname", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
        sa.Column("sortorder", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "role_assignments",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("role_id", sa.BigInteger(), sa.ForeignKey("roles.id"), nullable=False),
        sa.Column("context_id", sa.BigInteger(), sa.ForeignKey("contexts.id"), nullable=False),
        sa.UniqueConstraint("user_id", "role_id", "context_id", name="uq_role_assignments_user_role_context"),
    )
    op.create_index("ix_role_assignments_user_id", "role_assignments", ["user_id"], unique=False)
    op.create_index("ix_role_assignments_context_id", "role_assignments", ["context_id"], unique=False)
    op.create_index(
        "ix_role_assignments_user_context", "role_assignments", ["user_id", "context_id"], unique=False
    )

    op.create_table(
        "role_capabilities",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("role_id", sa.BigInteger(), sa.ForeignKey("roles.id"), nullable=False),
        sa.Column("context_id", sa.BigInteger(), sa.ForeignKey("contexts.id"), nullable=False),
        sa.Column("capability", sa.String(), nullable=False),
        sa.Column("permission", sa.Integer(), nullable=False),
        sa.Column("modified_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("modified_by", sa.BigInteger(), nullable=True),
        sa.UniqueConstraint("role_id", "context_id", "capability", name="uq_role_capabilities_role_context_cap"),
    )
    op.create_index("ix_role_capabilities_role_id", "role_capabilities", ["role_id"], unique=False)
    op.create_index("ix_role_capabilities_context_id", "role_capabilities", ["context_id"], unique=False)

    op.create_table(
        "scan_runs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("initiated_by", sa.BigInteger(), nullable=True),
        sa.Column("scope_context_id", sa.BigInteger(), nullable=True),
        sa.Column("meta", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_scan_runs_started_at", "scan_runs", ["started_at"], unique=False)
    op.create_index("ix_scan_runs_status", "scan_runs", ["status"], unique=False)

    op.create_table(
        "findings",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False, unique=True),
        sa.Column("scan_id", sa.BigInteger(), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("severity", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("context_id", sa.BigInteger(), nullable=False),
        sa.Column("capability", sa.String(), nullable=False),
        sa.Column("issue_state", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolved_by", sa.BigInteger(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_findings_scan_id", "findings", ["scan_id"], unique=False)
    op.create_index("ix_findings_user_context", "findings", ["user_id", "context_id"], unique=False)
    op.create_index("ix_findings_state_type", "findings", ["issue_state", "type"], unique=False)

    op.create_table(
        "finding_capabilities",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "finding_id",
            sa.BigInteger(),
            sa.ForeignKey("findings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role_id", sa.BigInteger(), nullable=False),
        sa.Column("permission", sa.Integer(), nullable=False),
        sa.Column("capability", sa.String(), nullable=False),
        sa.Column("label", sa.String(length=16), nullable=False),
    )
    op.create_index("ix_finding_capabilities_finding", "finding_capabilities", ["finding_id"], unique=False)

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"], unique=False)
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"], unique=False)


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("finding_capabilities")
    op.drop_table("findings")
    op.drop_table("scan_runs")
    op.drop_table("role_capabilities")
    op.drop_table("role_assignments")
    op.drop_table("roles")
    op.drop_table("contexts")
