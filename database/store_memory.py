"""
In-memory stores: Dict-backed stores for development and testing.

Features:
  - No database required
  - Full interface compatibility with the SQL stores
  - Safe under concurrent coroutines via an asyncio lock (single event loop)
  - All data lost on process restart

Records are kept as JSON-ready dicts, never as live model objects, so a
caller mutating a returned execution cannot change the stored one.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Optional

import structlog

from core.errors import (
    AlreadyActiveError, ExecutionNotActiveError, ExecutionNotFoundError, StaleExecutionError,
)
from database.store_base import (
    BaseExecutionStore, BaseFlowStore, execution_key, parse_flow, parse_flows,
)
from models.schemas import ExecutionStatus, FlowExecution, InteractiveFlow, TriggerType

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryExecutionStore(BaseExecutionStore):

    def __init__(self, lease_ttl_seconds: float = 30.0, lease_wait_seconds: float = 2.0,
                 lease_retry_interval: float = 0.05):
        super().__init__(lease_ttl_seconds, lease_wait_seconds, lease_retry_interval)
        self._executions: dict[str, dict] = {}         # id → execution dict
        self._active_index: dict[str, str] = {}        # "tenant:contact" → execution id
        self._leases: dict[str, tuple[str, float]] = {}  # key → (token, expires monotonic)
        self._lock = asyncio.Lock()
        logger.info("inmemory_execution_store_initialized")

    def _load(self, data: Optional[dict]) -> Optional[FlowExecution]:
        return FlowExecution.model_validate(data) if data else None

    def _write(self, execution: FlowExecution):
        """Store a record and keep the active index in step with its status."""
        self._executions[execution.id] = execution.model_dump(mode="json")
        key = execution_key(execution.tenant_id, execution.contact)
        if execution.status == ExecutionStatus.ACTIVE:
            self._active_index[key] = execution.id
        elif self._active_index.get(key) == execution.id:
            del self._active_index[key]

    # ── Reads ─────────────────────────────────────────────

    async def get_active(self, tenant_id: str, contact: str) -> Optional[FlowExecution]:
        execution_id = self._active_index.get(execution_key(tenant_id, contact))
        return self._load(self._executions.get(execution_id)) if execution_id else None

    async def get(self, execution_id: str) -> Optional[FlowExecution]:
        return self._load(self._executions.get(execution_id))

    async def list_executions(self, tenant_id: str, contact: Optional[str] = None,
                              limit: int = 50) -> list[FlowExecution]:
        rows = [
            e for e in self._executions.values()
            if e["tenant_id"] == tenant_id and (contact is None or e["contact"] == contact)
        ]
        rows.sort(key=lambda e: e.get("started_at", ""), reverse=True)
        return [self._load(e) for e in rows[:limit]]

    # ── Writes ────────────────────────────────────────────

    async def claim(self, tenant_id: str, contact: str, flow_id: str,
                    start_block_id: str) -> FlowExecution:
        async with self._lock:
            existing = self._active_index.get(execution_key(tenant_id, contact))
            if existing:
                raise AlreadyActiveError(tenant_id, contact, existing)
            execution = FlowExecution(
                flow_id=flow_id, tenant_id=tenant_id, contact=contact,
                current_block_id=start_block_id,
            )
            self._write(execution)
        logger.info("execution_claimed", execution_id=execution.id, flow_id=flow_id,
                    tenant_id=tenant_id, contact=contact)
        return execution.model_copy(deep=True)

    async def save(self, execution: FlowExecution) -> FlowExecution:
        async with self._lock:
            stored = self._executions.get(execution.id)
            if stored is None:
                raise ExecutionNotFoundError(execution.id)
            if stored["version"] != execution.version:
                raise StaleExecutionError(execution.id, execution.version)
            if stored["status"] != ExecutionStatus.ACTIVE.value:
                raise ExecutionNotActiveError(execution.id, stored["status"])
            saved = execution.model_copy(update={"version": execution.version + 1}, deep=True)
            self._write(saved)
        return saved.model_copy(deep=True)

    async def release(self, execution_id: str, status: ExecutionStatus,
                      error: str = "") -> FlowExecution:
        async with self._lock:
            current = self._load(self._executions.get(execution_id))
            if current is None:
                raise ExecutionNotFoundError(execution_id)
            if not current.is_active:
                raise ExecutionNotActiveError(execution_id, current.status.value)
            released = current.model_copy(update={
                "status": ExecutionStatus(status),
                "error": error or current.error,
                "completed_at": _utcnow(),
                "version": current.version + 1,
            })
            self._write(released)
        logger.info("execution_released", execution_id=execution_id, status=ExecutionStatus(status).value)
        return released

    # ── Lease ─────────────────────────────────────────────

    async def _acquire_lease(self, key: str, token: str) -> bool:
        async with self._lock:
            now = time.monotonic()
            holder = self._leases.get(key)
            if holder and holder[0] != token and holder[1] > now:
                return False
            self._leases[key] = (token, now + self.lease_ttl_seconds)
            return True

    async def _release_lease(self, key: str, token: str) -> None:
        async with self._lock:
            holder = self._leases.get(key)
            if holder and holder[0] == token:
                del self._leases[key]


class InMemoryFlowStore(BaseFlowStore):

    def __init__(self):
        self._flows: dict[str, dict] = {}              # id → flow dict (editor JSON)

    def _load(self, data: Optional[dict]) -> Optional[InteractiveFlow]:
        return parse_flow(data) if data else None

    async def get_flow(self, tenant_id: str, flow_id: str) -> Optional[InteractiveFlow]:
        data = self._flows.get(flow_id)
        if data is None or data.get("tenantId") != tenant_id:
            return None
        return self._load(data)

    async def list_active_flows(self, tenant_id: str,
                                trigger_type: Optional[TriggerType] = None) -> list[InteractiveFlow]:
        flows = parse_flows(f for f in self._flows.values()
                            if f.get("tenantId") == tenant_id and f.get("isActive"))
        if trigger_type is not None:
            flows = [f for f in flows if f.trigger_type == TriggerType(trigger_type)]
        flows.sort(key=lambda f: (f.created_at, f.id))
        return flows

    async def upsert_flow(self, flow: InteractiveFlow) -> InteractiveFlow:
        self._flows[flow.id] = flow.model_dump(mode="json", by_alias=True)
        logger.info("flow_upserted", flow_id=flow.id, tenant_id=flow.tenant_id, name=flow.name)
        return flow
