"""
Error hierarchy for the flow engine.

Definition problems never escape as exceptions from the drive loop; they are
converted into an error disposition. The exceptions below are the ones callers
are expected to handle.
"""
from __future__ import annotations

from typing import Optional


class FlowEngineError(Exception):
    """Base exception for all engine operations."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class FlowDefinitionError(FlowEngineError):
    def __init__(self, message: str, flow_id: str = "", block_id: Optional[str] = None,
                 errors: Optional[list] = None):
        self.flow_id = flow_id
        self.block_id = block_id
        self.errors = errors or []
        super().__init__(message)


class FlowNotFoundError(FlowEngineError):
    def __init__(self, tenant_id: str, flow_id: str):
        self.tenant_id = tenant_id
        self.flow_id = flow_id
        super().__init__(f"Flow {flow_id} not found or inactive for tenant {tenant_id}")


class AlreadyActiveError(FlowEngineError):
    def __init__(self, tenant_id: str, contact: str, execution_id: Optional[str] = None):
        self.tenant_id = tenant_id
        self.contact = contact
        self.execution_id = execution_id
        super().__init__(f"Contact {contact} already has an active execution ({execution_id})")


class NoActiveExecutionError(FlowEngineError):
    def __init__(self, tenant_id: str, contact: str):
        self.tenant_id = tenant_id
        self.contact = contact
        super().__init__(f"No active execution for contact {contact}")


class ExecutionNotFoundError(FlowEngineError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} not found")


class ExecutionNotActiveError(FlowEngineError):
    def __init__(self, execution_id: str, status: str):
        self.execution_id = execution_id
        self.status = status
        super().__init__(f"Execution {execution_id} is {status}")


class ContactBusyError(FlowEngineError):
    """Another caller holds the per-contact lease."""

    def __init__(self, tenant_id: str, contact: str):
        self.tenant_id = tenant_id
        self.contact = contact
        super().__init__(f"Contact {contact} is being processed", retryable=True)


class StaleExecutionError(FlowEngineError):
    """A save lost the compare-and-set on the execution version."""

    def __init__(self, execution_id: str, expected_version: int):
        self.execution_id = execution_id
        self.expected_version = expected_version
        super().__init__(f"Execution {execution_id} changed since version {expected_version}")


class StoreError(FlowEngineError):
    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class CollaboratorError(FlowEngineError):
    """A messaging or CRM call failed."""

    def __init__(self, message: str, retryable: bool = True, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, retryable=retryable)


class LeaseLostError(FlowEngineError):
    """The per-contact lease was taken over while this caller still held it."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Lease on {key} was lost", retryable=True)
