"""
SQL stores: Portable SQL queries for PostgreSQL, MySQL, SQLite.

  - One active execution per contact: UNIQUE ``active_key`` column; a losing
    concurrent claim surfaces as IntegrityError and becomes AlreadyActiveError.
  - Compare-and-set saves: UPDATE ... WHERE version = :expected, checked via
    rowcount.
  - Leases: one row per (tenant, contact) in flow_execution_leases, taken with
    a conditional UPDATE or a racing INSERT.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.errors import (
    AlreadyActiveError, ExecutionNotActiveError, ExecutionNotFoundError,
    StaleExecutionError, StoreError,
)
from database.models import ExecutionLeaseRow, FlowExecutionRow, FlowRow
from database.session import SessionScope
from database.store_base import (
    BaseExecutionStore, BaseFlowStore, execution_key, parse_flow, parse_flows,
)
from models.schemas import (
    ExecutionStatus, FlowExecution, FlowStep, InteractiveFlow, TriggerType,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands timestamps back naive; they were written as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlExecutionStore(BaseExecutionStore):
    """
    Persistent execution store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_scope: SessionScope, **lease_options):
        super().__init__(**lease_options)
        self._session = session_scope

    # ── Row mapping ───────────────────────────────────────

    @staticmethod
    def _row_to_execution(row: FlowExecutionRow) -> FlowExecution:
        return FlowExecution(
            id=row.id,
            flow_id=row.flow_id,
            tenant_id=row.tenant_id,
            contact=row.contact,
            current_block_id=row.current_block_id,
            status=ExecutionStatus(row.status),
            variables=row.variables or {},
            history=row.history or [],
            steps=[FlowStep.model_validate(s) for s in (row.steps or [])],
            awaiting_input=bool(row.awaiting_input),
            effects_committed=row.effects_committed or 0,
            failure_count=row.failure_count or 0,
            last_input_id=row.last_input_id,
            error=row.error or "",
            version=row.version,
            started_at=_aware(row.started_at),
            last_step_at=_aware(row.last_step_at),
            completed_at=_aware(row.completed_at),
        )

    @staticmethod
    def _execution_values(execution: FlowExecution) -> dict[str, Any]:
        active = execution.status == ExecutionStatus.ACTIVE
        return {
            "id": execution.id,
            "flow_id": execution.flow_id,
            "tenant_id": execution.tenant_id,
            "contact": execution.contact,
            "current_block_id": execution.current_block_id,
            "status": ExecutionStatus(execution.status).value,
            "active_key": execution_key(execution.tenant_id, execution.contact) if active else None,
            "variables": dict(execution.variables),
            "history": list(execution.history),
            "steps": [s.model_dump(mode="json") for s in execution.steps],
            "awaiting_input": execution.awaiting_input,
            "effects_committed": execution.effects_committed,
            "failure_count": execution.failure_count,
            "last_input_id": execution.last_input_id,
            "error": execution.error,
            "version": execution.version,
            "started_at": execution.started_at,
            "last_step_at": execution.last_step_at,
            "completed_at": execution.completed_at,
        }

    # ── Reads ─────────────────────────────────────────────

    async def get_active(self, tenant_id: str, contact: str) -> Optional[FlowExecution]:
        try:
            async with self._session() as db:
                stmt = select(FlowExecutionRow).where(
                    FlowExecutionRow.active_key == execution_key(tenant_id, contact)
                )
                row = (await db.execute(stmt)).scalar_one_or_none()
                return self._row_to_execution(row) if row else None
        except SQLAlchemyError as e:
            raise StoreError(f"get_active failed: {e}") from e

    async def get(self, execution_id: str) -> Optional[FlowExecution]:
        try:
            async with self._session() as db:
                row = await db.get(FlowExecutionRow, execution_id)
                return self._row_to_execution(row) if row else None
        except SQLAlchemyError as e:
            raise StoreError(f"get failed: {e}") from e

    async def list_executions(self, tenant_id: str, contact: Optional[str] = None,
                              limit: int = 50) -> list[FlowExecution]:
        stmt = select(FlowExecutionRow).where(FlowExecutionRow.tenant_id == tenant_id)
        if contact is not None:
            stmt = stmt.where(FlowExecutionRow.contact == contact)
        stmt = stmt.order_by(FlowExecutionRow.started_at.desc()).limit(limit)
        try:
            async with self._session() as db:
                result = await db.execute(stmt)
                return [self._row_to_execution(r) for r in result.scalars()]
        except SQLAlchemyError as e:
            raise StoreError(f"list_executions failed: {e}") from e

    # ── Writes ────────────────────────────────────────────

    async def claim(self, tenant_id: str, contact: str, flow_id: str,
                    start_block_id: str) -> FlowExecution:
        execution = FlowExecution(
            flow_id=flow_id, tenant_id=tenant_id, contact=contact,
            current_block_id=start_block_id,
        )
        try:
            async with self._session() as db:
                db.add(FlowExecutionRow(**self._execution_values(execution)))
                await db.flush()
        except IntegrityError as e:
            existing = await self.get_active(tenant_id, contact)
            raise AlreadyActiveError(tenant_id, contact, existing.id if existing else None) from e
        except SQLAlchemyError as e:
            raise StoreError(f"claim failed: {e}") from e

        logger.info("execution_claimed", execution_id=execution.id, flow_id=flow_id,
                    tenant_id=tenant_id, contact=contact)
        return execution

    async def save(self, execution: FlowExecution) -> FlowExecution:
        values = self._execution_values(execution)
        values.pop("id")
        values["version"] = execution.version + 1
        stmt = (
            update(FlowExecutionRow)
            .where(
                FlowExecutionRow.id == execution.id,
                FlowExecutionRow.version == execution.version,
                FlowExecutionRow.status == ExecutionStatus.ACTIVE.value,
            )
            .values(**values)
        )
        try:
            async with self._session() as db:
                result = await db.execute(stmt)
                if result.rowcount == 1:
                    return execution.model_copy(update={"version": execution.version + 1}, deep=True)
                row = await db.get(FlowExecutionRow, execution.id)
                current = (row.status, row.version) if row else None
        except SQLAlchemyError as e:
            raise StoreError(f"save failed: {e}") from e

        if current is None:
            raise ExecutionNotFoundError(execution.id)
        if current[0] != ExecutionStatus.ACTIVE.value:
            raise ExecutionNotActiveError(execution.id, current[0])
        raise StaleExecutionError(execution.id, execution.version)

    async def release(self, execution_id: str, status: ExecutionStatus,
                      error: str = "") -> FlowExecution:
        try:
            async with self._session() as db:
                row = await db.get(FlowExecutionRow, execution_id)
                if row is None:
                    raise ExecutionNotFoundError(execution_id)
                if row.status != ExecutionStatus.ACTIVE.value:
                    raise ExecutionNotActiveError(execution_id, row.status)
                row.status = ExecutionStatus(status).value
                row.active_key = None
                row.completed_at = _utcnow()
                row.version = row.version + 1
                if error:
                    row.error = error
                await db.flush()
                released = self._row_to_execution(row)
        except SQLAlchemyError as e:
            raise StoreError(f"release failed: {e}") from e

        logger.info("execution_released", execution_id=execution_id, status=released.status.value)
        return released

    # ── Lease ─────────────────────────────────────────────

    async def _acquire_lease(self, key: str, token: str) -> bool:
        now = time.time()
        expires = now + self.lease_ttl_seconds
        try:
            async with self._session() as db:
                stmt = (
                    update(ExecutionLeaseRow)
                    .where(
                        ExecutionLeaseRow.key == key,
                        or_(ExecutionLeaseRow.expires_at < now, ExecutionLeaseRow.token == token),
                    )
                    .values(token=token, expires_at=expires)
                )
                if (await db.execute(stmt)).rowcount == 1:
                    return True
                if await db.get(ExecutionLeaseRow, key) is not None:
                    return False
                db.add(ExecutionLeaseRow(key=key, token=token, expires_at=expires))
                await db.flush()
        except IntegrityError:
            # another caller inserted the lease row first
            return False
        except SQLAlchemyError as e:
            raise StoreError(f"lease failed: {e}") from e
        return True

    async def _release_lease(self, key: str, token: str) -> None:
        try:
            async with self._session() as db:
                await db.execute(
                    delete(ExecutionLeaseRow).where(
                        ExecutionLeaseRow.key == key, ExecutionLeaseRow.token == token,
                    )
                )
        except SQLAlchemyError as e:
            # the lease expires on its own after lease_ttl_seconds
            logger.warning("lease_release_failed", key=key, error=str(e))


class SqlFlowStore(BaseFlowStore):

    def __init__(self, session_scope: SessionScope):
        self._session = session_scope

    @staticmethod
    def _row_to_document(row: FlowRow) -> dict[str, Any]:
        return {
            "id": row.id,
            "tenantId": row.tenant_id,
            "name": row.name,
            "description": row.description or "",
            "isActive": row.is_active,
            "triggerType": row.trigger_type,
            "triggerKeywords": row.trigger_keywords or [],
            "triggerQrCode": row.trigger_qr_code or "",
            "blocks": row.blocks or [],
            "edges": row.edges or [],
            "startBlockId": row.start_block_id,
            "createdAt": _aware(row.created_at),
            "updatedAt": _aware(row.updated_at),
        }

    async def get_flow(self, tenant_id: str, flow_id: str) -> Optional[InteractiveFlow]:
        try:
            async with self._session() as db:
                row = await db.get(FlowRow, flow_id)
                if row is None or row.tenant_id != tenant_id:
                    return None
                return parse_flow(self._row_to_document(row))
        except SQLAlchemyError as e:
            raise StoreError(f"get_flow failed: {e}") from e

    async def list_active_flows(self, tenant_id: str,
                                trigger_type: Optional[TriggerType] = None) -> list[InteractiveFlow]:
        stmt = select(FlowRow).where(FlowRow.tenant_id == tenant_id, FlowRow.is_active.is_(True))
        if trigger_type is not None:
            stmt = stmt.where(FlowRow.trigger_type == TriggerType(trigger_type).value)
        stmt = stmt.order_by(FlowRow.created_at, FlowRow.id)
        try:
            async with self._session() as db:
                result = await db.execute(stmt)
                return parse_flows(self._row_to_document(r) for r in result.scalars())
        except SQLAlchemyError as e:
            raise StoreError(f"list_active_flows failed: {e}") from e

    async def upsert_flow(self, flow: InteractiveFlow) -> InteractiveFlow:
        data = flow.model_dump(mode="json", by_alias=True)
        values = {
            "tenant_id": flow.tenant_id,
            "name": flow.name,
            "description": flow.description,
            "is_active": flow.is_active,
            "trigger_type": flow.trigger_type.value,
            "trigger_keywords": list(flow.trigger_keywords),
            "trigger_qr_code": flow.trigger_qr_code,
            "blocks": data["blocks"],
            "edges": data["edges"],
            "start_block_id": flow.start_block_id,
            "created_at": flow.created_at,
            "updated_at": flow.updated_at,
        }
        try:
            async with self._session() as db:
                row = await db.get(FlowRow, flow.id)
                if row is None:
                    db.add(FlowRow(id=flow.id, **values))
                else:
                    for k, v in values.items():
                        setattr(row, k, v)
        except SQLAlchemyError as e:
            raise StoreError(f"upsert_flow failed: {e}") from e
        logger.info("flow_upserted", flow_id=flow.id, tenant_id=flow.tenant_id, name=flow.name)
        return flow
