from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (tests run against SQLite).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    # ORG_ADMIN | SUPER_ADMIN | SECURITY_OWNER | MEMBER
    role: Mapped[str] = mapped_column(String, default="MEMBER")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserGitAccount(Base):
    __tablename__ = "user_git_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_user_git_accounts_user_provider"),
    )

    # Links an internal user to a source-hosting login for roster checks.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    provider: Mapped[str] = mapped_column(String, default="GITHUB")
    login: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Integration(Base):
    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", name="uq_integrations_org_provider"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    provider: Mapped[str] = mapped_column(String, default="GITHUB")
    # ACTIVE | DISCONNECTED
    status: Mapped[str] = mapped_column(String, default="ACTIVE")
    # Supplied by the OAuth exchange layer; encryption at rest is handled there.
    access_token: Mapped[str] = mapped_column(Text)
    account_login: Mapped[str | None] = mapped_column(String, nullable=True)
    connected_by: Mapped[str | None] = mapped_column(String, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Subject(Base):
    __tablename__ = "subjects"
    __table_args__ = (
        UniqueConstraint("organization_id", "kind", "name", name="uq_subjects_org_kind_name"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    # ORGANIZATION | REPO | DEVICE
    kind: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    criticality: Mapped[str] = mapped_column(String, default="MEDIUM")
    # ACTIVE | ARCHIVED | REMOVED
    status: Mapped[str] = mapped_column(String, default="ACTIVE")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    hostname: Mapped[str | None] = mapped_column(String, nullable=True)
    os_type: Mapped[str | None] = mapped_column(String, nullable=True)
    os_version: Mapped[str | None] = mapped_column(String, nullable=True)
    serial_number: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    owner_id: Mapped[str | None] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    parent_id: Mapped[str | None] = mapped_column(String, ForeignKey("subjects.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Control(Base):
    __tablename__ = "controls"
    __table_args__ = (
        UniqueConstraint("organization_id", "iso_reference", name="uq_controls_org_reference"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    # ISO 27001:2022 Annex A reference, e.g. "A.8.32".
    iso_reference: Mapped[str] = mapped_column(String, index=True)
    title: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="NOT_IMPLEMENTED")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Evidence(Base):
    __tablename__ = "evidence"
    __table_args__ = (
        UniqueConstraint("control_id", "content_hash", name="uq_evidence_control_hash"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    control_id: Mapped[str] = mapped_column(String, ForeignKey("controls.id"), index=True)
    content_hash: Mapped[str] = mapped_column(String(64))
    automated: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    source_description: Mapped[str] = mapped_column(Text)
    collected_by: Mapped[str] = mapped_column(String)
    file_name: Mapped[str | None] = mapped_column(String, nullable=True)
    check_name: Mapped[str | None] = mapped_column(String, nullable=True)
    subject_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    collected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Risk(Base):
    __tablename__ = "risks"
    __table_args__ = (
        UniqueConstraint("subject_id", "title", name="uq_risks_subject_title"),
        Index("ix_risks_org_status", "organization_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), index=True)
    check_name: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    # Narrative fields stay editable by humans.
    description: Mapped[str] = mapped_column(Text)
    treatment_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    impact: Mapped[str] = mapped_column(String)
    likelihood: Mapped[str] = mapped_column(String)
    score: Mapped[int] = mapped_column(Integer)
    # OPEN | MITIGATED
    status: Mapped[str] = mapped_column(String, default="OPEN")
    opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    mitigated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class RiskTreatment(Base):
    __tablename__ = "risk_treatments"
    __table_args__ = (
        UniqueConstraint("risk_id", "control_id", name="uq_risk_treatments_risk_control"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    risk_id: Mapped[str] = mapped_column(String, ForeignKey("risks.id"), index=True)
    control_id: Mapped[str] = mapped_column(String, ForeignKey("controls.id"), index=True)


class CheckResult(Base):
    __tablename__ = "check_results"
    __table_args__ = (
        UniqueConstraint("subject_id", "check_name", name="uq_check_results_subject_check"),
    )

    # Latest verdict per (subject, check); control aggregation reads from here.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), index=True)
    check_name: Mapped[str] = mapped_column(String, index=True)
    result: Mapped[str] = mapped_column(String)
    summary: Mapped[str] = mapped_column(Text)
    findings_json: Mapped[list[Any] | None] = mapped_column(JSONType, nullable=True)
    content_hash: Mapped[str] = mapped_column(String(64))
    evaluated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class TrackedItem(Base):
    __tablename__ = "tracked_items"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_tracked_items_org_name"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String, default="Policy")
    # Document | Automated
    item_type: Mapped[str] = mapped_column(String, default="Document")
    check_name: Mapped[str | None] = mapped_column(String, nullable=True)
    owner_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Stored override; the displayed status is derived at read time.
    status: Mapped[str] = mapped_column(String, default="Due_soon")
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_run_result: Mapped[str | None] = mapped_column(String, nullable=True)
    last_run_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class TrackedItemControl(Base):
    __tablename__ = "tracked_item_controls"
    __table_args__ = (
        UniqueConstraint("item_id", "control_id", name="uq_tracked_item_controls"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    item_id: Mapped[str] = mapped_column(String, ForeignKey("tracked_items.id"), index=True)
    control_id: Mapped[str] = mapped_column(String, ForeignKey("controls.id"), index=True)


class TrackedItemHistory(Base):
    __tablename__ = "tracked_item_history"

    # Append-only change trail.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(String, ForeignKey("tracked_items.id"), index=True)
    changed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    change_type: Mapped[str] = mapped_column(String)
    old_value: Mapped[str | None] = mapped_column(String, nullable=True)
    new_value: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TrackedItemRun(Base):
    __tablename__ = "tracked_item_runs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(String, ForeignKey("tracked_items.id"), index=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    result: Mapped[str] = mapped_column(String)
    summary: Mapped[str] = mapped_column(Text)
    findings_json: Mapped[list[Any] | None] = mapped_column(JSONType, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class EnrollmentToken(Base):
    __tablename__ = "enrollment_tokens"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    token: Mapped[str] = mapped_column(String, unique=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DeviceEnrollment(Base):
    __tablename__ = "device_enrollments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), unique=True)
    # Only the SHA-256 of the device key is stored.
    api_key_hash: Mapped[str] = mapped_column(String(64))
    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enrolled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DeviceCheckin(Base):
    __tablename__ = "device_checkins"

    # Append-only raw posture reports.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), index=True)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DeviceCompliance(Base):
    __tablename__ = "device_compliance"

    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), primary_key=True)
    disk_encryption_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    screen_lock_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    firewall_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    system_integrity_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_update_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    # COMPLIANT | NON_COMPLIANT
    compliance_status: Mapped[str] = mapped_column(String)
    last_checked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Null for system events not tied to one organization.
    organization_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
