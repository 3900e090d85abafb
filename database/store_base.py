"""
Abstract stores: Interfaces for all storage backends.

Implementations:
  - SqlExecutionStore / SqlFlowStore           (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryExecutionStore / InMemoryFlowStore (dict-based, single-process, no persistence)
  - FileExecutionStore / FileFlowStore         (JSON files on disk, single-process, durable)

The execution store is the only shared mutable resource of the engine. It
guarantees at most one active execution per (tenant, contact) through
``claim`` and serializes drive loops for one contact through ``lease``.
"""
from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Iterable, Optional

import structlog
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_delay, wait_fixed

from core.errors import ContactBusyError, FlowDefinitionError, LeaseLostError, StoreError
from models.schemas import ExecutionStatus, FlowExecution, InteractiveFlow, TriggerType

logger = structlog.get_logger()


def execution_key(tenant_id: str, contact: str) -> str:
    return f"{tenant_id}:{contact}"


def parse_flow(data: dict[str, Any]) -> InteractiveFlow:
    """Parse a stored flow document, raising FlowDefinitionError when it is malformed."""
    try:
        return InteractiveFlow.model_validate(data)
    except ValidationError as e:
        flow_id = str(data.get("id", ""))
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise FlowDefinitionError(
            f"Flow {flow_id} cannot be parsed ({e.error_count()} errors)",
            flow_id=flow_id, errors=errors,
        ) from e


def parse_flows(rows: Iterable[dict[str, Any]]) -> list[InteractiveFlow]:
    """Parse flow documents one by one; malformed ones are logged and left out."""
    flows = []
    for data in rows:
        try:
            flows.append(parse_flow(data))
        except FlowDefinitionError as e:
            logger.warning("flow_unparseable", flow_id=e.flow_id, errors=e.errors)
    return flows


class Lease:
    """
    A held per-contact lease. The store renews it in the background; ``lost``
    turns true once a renewal finds another holder.
    """

    def __init__(self, key: str, token: str):
        self.key = key
        self.token = token
        self.lost = False

    def ensure_held(self):
        if self.lost:
            raise LeaseLostError(self.key)


class BaseExecutionStore(ABC):
    """Interface that all execution store backends must implement."""

    def __init__(self, lease_ttl_seconds: float = 30.0, lease_wait_seconds: float = 2.0,
                 lease_retry_interval: float = 0.05):
        self.lease_ttl_seconds = lease_ttl_seconds
        self.lease_wait_seconds = lease_wait_seconds
        self.lease_retry_interval = lease_retry_interval

    # ── Reads ─────────────────────────────────────────────────

    @abstractmethod
    async def get_active(self, tenant_id: str, contact: str) -> Optional[FlowExecution]:
        ...

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[FlowExecution]:
        ...

    @abstractmethod
    async def list_executions(self, tenant_id: str, contact: Optional[str] = None,
                              limit: int = 50) -> list[FlowExecution]:
        """Most recently started first."""
        ...

    # ── Writes ────────────────────────────────────────────────

    @abstractmethod
    async def claim(self, tenant_id: str, contact: str, flow_id: str,
                    start_block_id: str) -> FlowExecution:
        """Create the contact's single active execution, or raise AlreadyActiveError."""
        ...

    @abstractmethod
    async def save(self, execution: FlowExecution) -> FlowExecution:
        """
        Compare-and-set on ``version``: raises StaleExecutionError if the stored
        version differs. Returns the saved copy with the bumped version.
        """
        ...

    @abstractmethod
    async def release(self, execution_id: str, status: ExecutionStatus,
                      error: str = "") -> FlowExecution:
        """Move an active execution to a terminal status."""
        ...

    # ── Lease ─────────────────────────────────────────────────

    @abstractmethod
    async def _acquire_lease(self, key: str, token: str) -> bool:
        """Take the lease if free, expired, or already ours. Never blocks."""
        ...

    @abstractmethod
    async def _release_lease(self, key: str, token: str) -> None:
        ...

    async def _keep_alive(self, lease: Lease):
        """Renew ``lease`` every third of its TTL until cancelled or lost."""
        while True:
            await asyncio.sleep(self.lease_ttl_seconds / 3)
            try:
                held = await self._acquire_lease(lease.key, lease.token)
            except StoreError as e:
                logger.warning("lease_renew_failed", key=lease.key, error=str(e))
                continue
            if not held:
                lease.lost = True
                logger.error("lease_lost", key=lease.key)
                return

    @asynccontextmanager
    async def lease(self, tenant_id: str, contact: str) -> AsyncIterator[Lease]:
        """
        Mutual exclusion keyed by (tenant, contact).
        Waits up to ``lease_wait_seconds``, then raises ContactBusyError.
        The lease is renewed while held, so a slow holder keeps it past
        ``lease_ttl_seconds``; only a holder that stopped running loses it.
        """
        key = execution_key(tenant_id, contact)
        token = uuid.uuid4().hex

        async for attempt in AsyncRetrying(
            stop=stop_after_delay(self.lease_wait_seconds),
            wait=wait_fixed(self.lease_retry_interval),
            retry=retry_if_exception_type(ContactBusyError),
            reraise=True,
        ):
            with attempt:
                if not await self._acquire_lease(key, token):
                    raise ContactBusyError(tenant_id, contact)

        lease = Lease(key, token)
        keeper = asyncio.create_task(self._keep_alive(lease))
        try:
            yield lease
        finally:
            keeper.cancel()
            with suppress(asyncio.CancelledError):
                await keeper
            await self._release_lease(key, token)


class BaseFlowStore(ABC):
    """Flow definitions. Read-only for the engine; ``upsert_flow`` is for seeding."""

    @abstractmethod
    async def get_flow(self, tenant_id: str, flow_id: str) -> Optional[InteractiveFlow]:
        """
        Active or not; running executions keep going when a flow is deactivated.
        Raises FlowDefinitionError when the stored document cannot be parsed.
        """
        ...

    async def get_active_flow(self, tenant_id: str, flow_id: str) -> Optional[InteractiveFlow]:
        flow = await self.get_flow(tenant_id, flow_id)
        return flow if flow is not None and flow.is_active else None

    @abstractmethod
    async def list_active_flows(self, tenant_id: str,
                                trigger_type: Optional[TriggerType] = None) -> list[InteractiveFlow]:
        """Ordered by creation time, then id. Unparseable flows are skipped."""
        ...

    @abstractmethod
    async def upsert_flow(self, flow: InteractiveFlow) -> InteractiveFlow:
        ...
