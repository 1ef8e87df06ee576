from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# BIGSERIAL on Postgres; sqlite only autoincrements INTEGER PRIMARY KEY.
IdType = BigInteger().with_variant(Integer(), "sqlite")
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Context(Base):
    __tablename__ = "contexts"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    # Context level constants live in capaudit.domain.rbac.
    contextlevel: Mapped[int] = mapped_column(Integer, index=True)
    # Slash separated ids from the root down to this node, e.g. "/1/3/15".
    path: Mapped[str] = mapped_column(String, index=True, default="")
    parent_id: Mapped[int | None] = mapped_column(IdType, ForeignKey("contexts.id"), nullable=True)
    name: Mapped[str] = mapped_column(String, default="")


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    shortname: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str] = mapped_column(String, default="")
    sortorder: Mapped[int] = mapped_column(Integer, default=0)


class RoleAssignment(Base):
    __tablename__ = "role_assignments"
    __table_args__ = (
        UniqueConstraint("user_id", "role_id", "context_id", name="uq_role_assignments_user_role_context"),
        Index("ix_role_assignments_user_context", "user_id", "context_id"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, index=True)
    role_id: Mapped[int] = mapped_column(IdType, ForeignKey("roles.id"))
    context_id: Mapped[int] = mapped_column(IdType, ForeignKey("contexts.id"), index=True)


class RoleCapability(Base):
    __tablename__ = "role_capabilities"
    __table_args__ = (
        UniqueConstraint("role_id", "context_id", "capability", name="uq_role_capabilities_role_context_cap"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    role_id: Mapped[int] = mapped_column(IdType, ForeignKey("roles.id"), index=True)
    context_id: Mapped[int] = mapped_column(IdType, ForeignKey("contexts.id"), index=True)
    capability: Mapped[str] = mapped_column(String)
    permission: Mapped[int] = mapped_column(Integer)
    modified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    modified_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class ScanRun(Base):
    __tablename__ = "scan_runs"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # running -> success | failed; stored for externally computed summaries.
    status: Mapped[str] = mapped_column(String, index=True)
    # Null initiator means a system (scheduled) run.
    initiated_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    scope_context_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)


class Finding(Base):
    __tablename__ = "findings"
    __table_args__ = (
        Index("ix_findings_user_context", "user_id", "context_id"),
        Index("ix_findings_state_type", "issue_state", "type"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    # Deduplication key across scan runs.
    fingerprint: Mapped[str] = mapped_column(String(64), unique=True)
    # Last scan run that observed this finding.
    scan_id: Mapped[int] = mapped_column(BigInteger, index=True)
    type: Mapped[str] = mapped_column(String(16))
    severity: Mapped[int] = mapped_column(Integer)
    user_id: Mapped[int] = mapped_column(BigInteger)
    context_id: Mapped[int] = mapped_column(BigInteger)
    capability: Mapped[str] = mapped_column(String)
    issue_state: Mapped[str] = mapped_column(String(16), default="pending")
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Kept in step with issue_state for consumers of the legacy flag.
    resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Serialized allow/prevent/prohibit role id lists.
    details: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)


class FindingCapability(Base):
    __tablename__ = "finding_capabilities"
    __table_args__ = (Index("ix_finding_capabilities_finding", "finding_id"),)

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    # Detail rows are owned by the finding and rewritten on every refresh.
    finding_id: Mapped[int] = mapped_column(IdType, ForeignKey("findings.id", ondelete="CASCADE"))
    role_id: Mapped[int] = mapped_column(BigInteger)
    permission: Mapped[int] = mapped_column(Integer)
    capability: Mapped[str] = mapped_column(String)
    # allow | prevent | prohibit
    label: Mapped[str] = mapped_column(String(16))


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # system for scheduled scans, user for operator-initiated actions.
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
