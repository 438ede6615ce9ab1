"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        _created_at(),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_index("ix_users_organization_id", "users", ["organization_id"])

    op.create_table(
        "user_git_accounts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("login", sa.String(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("user_id", "provider", name="uq_user_git_accounts_user_provider"),
    )
    op.create_index("ix_user_git_accounts_user_id", "user_git_accounts", ["user_id"])
    op.create_index("ix_user_git_accounts_login", "user_git_accounts", ["login"])

    op.create_table(
        "integrations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("account_login", sa.String(), nullable=True),
        sa.Column("connected_by", sa.String(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint("organization_id", "provider", name="uq_integrations_org_provider"),
    )
    op.create_index("ix_integrations_organization_id", "integrations", ["organization_id"])

    op.create_table(
        "subjects",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("criticality", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("hostname", sa.String(), nullable=True),
        sa.Column("os_type", sa.String(), nullable=True),
        sa.Column("os_version", sa.String(), nullable=True),
        sa.Column("serial_number", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("owner_id", sa.String(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("parent_id", sa.String(), sa.ForeignKey("subjects.id"), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("organization_id", "kind", "name", name="uq_subjects_org_kind_name"),
    )
    op.create_index("ix_subjects_organization_id", "subjects", ["organization_id"])
    op.create_index("ix_subjects_kind", "subjects", ["kind"])
    op.create_index("ix_subjects_serial_number", "subjects", ["serial_number"])

    op.create_table(
        "controls",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("iso_reference", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        _updated_at(),
        sa.UniqueConstraint("organization_id", "iso_reference", name="uq_controls_org_reference"),
    )
    op.create_index("ix_controls_organization_id", "controls", ["organization_id"])
    op.create_index("ix_controls_iso_reference", "controls", ["iso_reference"])

    op.create_table(
        "evidence",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("control_id", sa.String(), sa.ForeignKey("controls.id"), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("automated", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("source_description", sa.Text(), nullable=False),
        sa.Column("collected_by", sa.String(), nullable=False),
        sa.Column("file_name", sa.String(), nullable=True),
        sa.Column("check_name", sa.String(), nullable=True),
        sa.Column("subject_id", sa.String(), nullable=True),
        sa.Column("payload_json", postgresql.JSONB(), nullable=True),
        sa.Column("collected_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("control_id", "content_hash", name="uq_evidence_control_hash"),
    )
    op.create_index("ix_evidence_organization_id", "evidence", ["organization_id"])
    op.create_index("ix_evidence_control_id", "evidence", ["control_id"])

    op.create_table(
        "risks",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), sa.ForeignKey("subjects.id"), nullable=False),
        sa.Column("check_name", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("treatment_notes", sa.Text(), nullable=True),
        sa.Column("impact", sa.String(), nullable=False),
        sa.Column("likelihood", sa.String(), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("mitigated_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("subject_id", "title", name="uq_risks_subject_title"),
    )
    op.create_index("ix_risks_organization_id", "risks", ["organization_id"])
    op.create_index("ix_risks_subject_id", "risks", ["subject_id"])
    op.create_index("ix_risks_org_status", "risks", ["organization_id", "status"])

    op.create_table(
        "risk_treatments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("risk_id", sa.String(), sa.ForeignKey("risks.id"), nullable=False),
        sa.Column("control_id", sa.String(), sa.ForeignKey("controls.id"), nullable=False),
        sa.UniqueConstraint("risk_id", "control_id", name="uq_risk_treatments_risk_control"),
    )
    op.create_index("ix_risk_treatments_risk_id", "risk_treatments", ["risk_id"])
    op.create_index("ix_risk_treatments_control_id", "risk_treatments", ["control_id"])

    op.create_table(
        "check_results",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), sa.ForeignKey("subjects.id"), nullable=False),
        sa.Column("check_name", sa.String(), nullable=False),
        sa.Column("result", sa.String(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("findings_json", postgresql.JSONB(), nullable=True),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("evaluated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("subject_id", "check_name", name="uq_check_results_subject_check"),
    )
    op.create_index("ix_check_results_organization_id", "check_results", ["organization_id"])
    op.create_index("ix_check_results_subject_id", "check_results", ["subject_id"])
    op.create_index("ix_check_results_check_name", "check_results", ["check_name"])

    op.create_table(
        "tracked_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("item_type", sa.String(), nullable=False),
        sa.Column("check_name", sa.String(), nullable=True),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_result", sa.String(), nullable=True),
        sa.Column("last_run_summary", sa.Text(), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("organization_id", "name", name="uq_tracked_items_org_name"),
    )
    op.create_index("ix_tracked_items_organization_id", "tracked_items", ["organization_id"])

    op.create_table(
        "tracked_item_controls",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("item_id", sa.String(), sa.ForeignKey("tracked_items.id"), nullable=False),
        sa.Column("control_id", sa.String(), sa.ForeignKey("controls.id"), nullable=False),
        sa.UniqueConstraint("item_id", "control_id", name="uq_tracked_item_controls"),
    )
    op.create_index("ix_tracked_item_controls_item_id", "tracked_item_controls", ["item_id"])
    op.create_index("ix_tracked_item_controls_control_id", "tracked_item_controls", ["control_id"])

    op.create_table(
        "tracked_item_history",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("item_id", sa.String(), sa.ForeignKey("tracked_items.id"), nullable=False),
        sa.Column("changed_by", sa.String(), nullable=True),
        sa.Column("change_type", sa.String(), nullable=False),
        sa.Column("old_value", sa.String(), nullable=True),
        sa.Column("new_value", sa.String(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_tracked_item_history_item_id", "tracked_item_history", ["item_id"])

    op.create_table(
        "tracked_item_runs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("item_id", sa.String(), sa.ForeignKey("tracked_items.id"), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("result", sa.String(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("findings_json", postgresql.JSONB(), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_tracked_item_runs_item_id", "tracked_item_runs", ["item_id"])
    op.create_index("ix_tracked_item_runs_organization_id", "tracked_item_runs", ["organization_id"])

    op.create_table(
        "enrollment_tokens",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("token", sa.String(), nullable=False, unique=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_enrollment_tokens_organization_id", "enrollment_tokens", ["organization_id"])

    op.create_table(
        "device_enrollments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), sa.ForeignKey("subjects.id"), nullable=False, unique=True),
        sa.Column("api_key_hash", sa.String(64), nullable=False),
        sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_device_enrollments_organization_id", "device_enrollments", ["organization_id"])

    op.create_table(
        "device_checkins",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("subject_id", sa.String(), sa.ForeignKey("subjects.id"), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_device_checkins_subject_id", "device_checkins", ["subject_id"])

    op.create_table(
        "device_compliance",
        sa.Column("subject_id", sa.String(), sa.ForeignKey("subjects.id"), primary_key=True),
        sa.Column("disk_encryption_enabled", sa.Boolean(), nullable=False),
        sa.Column("screen_lock_enabled", sa.Boolean(), nullable=False),
        sa.Column("firewall_enabled", sa.Boolean(), nullable=False),
        sa.Column("system_integrity_enabled", sa.Boolean(), nullable=False),
        sa.Column("auto_update_enabled", sa.Boolean(), nullable=False),
        sa.Column("compliance_status", sa.String(), nullable=False),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_organization_id", "audit_events", ["organization_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])


def downgrade() -> None:
    for table in (
        "audit_events",
        "device_compliance",
        "device_checkins",
        "device_enrollments",
        "enrollment_tokens",
        "tracked_item_runs",
        "tracked_item_history",
        "tracked_item_controls",
        "tracked_items",
        "check_results",
        "risk_treatments",
        "risks",
        "evidence",
        "controls",
        "subjects",
        "integrations",
        "user_git_accounts",
        "users",
        "organizations",
    ):
        op.drop_table(table)
