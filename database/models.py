"""
SQLAlchemy ORM models: Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB: on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - One active execution per contact is a plain UNIQUE constraint on the
    nullable ``active_key`` column ("tenant:contact" while active, NULL once
    finished). Every supported database allows many NULLs in a unique column,
    so no partial index is needed.
  - Lease expiry is stored as epoch seconds so comparisons do not depend on
    how each dialect handles timezone-aware timestamps.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, JSON, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Flow definitions
# ──────────────────────────────────────────────────────────────

class FlowRow(Base):
    __tablename__ = "interactive_flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    trigger_type: Mapped[str] = mapped_column(String(32), default="keyword")
    trigger_keywords: Mapped[Any] = mapped_column(JSON, default=list)
    trigger_qr_code: Mapped[str] = mapped_column(String(256), default="")
    blocks: Mapped[Any] = mapped_column(JSON, default=list)
    edges: Mapped[Any] = mapped_column(JSON, default=list)
    start_block_id: Mapped[str] = mapped_column(String(128), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_flows_tenant_trigger", "tenant_id", "is_active", "trigger_type"),
    )


# ──────────────────────────────────────────────────────────────
#  Executions
# ──────────────────────────────────────────────────────────────

class FlowExecutionRow(Base):
    __tablename__ = "flow_executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact: Mapped[str] = mapped_column(String(64), nullable=False)
    current_block_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="active", index=True)
    active_key: Mapped[Optional[str]] = mapped_column(String(160), unique=True, nullable=True)

    variables: Mapped[Any] = mapped_column(JSON, default=dict)
    history: Mapped[Any] = mapped_column(JSON, default=list)
    steps: Mapped[Any] = mapped_column(JSON, default=list)

    awaiting_input: Mapped[bool] = mapped_column(Boolean, default=False)
    effects_committed: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    last_input_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    error: Mapped[str] = mapped_column(Text, default="")
    version: Mapped[int] = mapped_column(Integer, default=0)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_step_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_executions_tenant_contact", "tenant_id", "contact"),
    )


class ExecutionLeaseRow(Base):
    """Per-contact mutual exclusion for the drive loop."""
    __tablename__ = "flow_execution_leases"

    key: Mapped[str] = mapped_column(String(160), primary_key=True)     # "tenant:contact"
    token: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False)    # epoch seconds
