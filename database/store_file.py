"""
File stores: JSON file-backed stores with persistence across restarts.

Data layout:
  {data_dir}/
    executions.json
    flows.json

Features:
  - Survives process restarts (unlike the in-memory stores)
  - No external dependencies (no database server)
  - Every mutation rewrites its collection through a temp file + rename
  - Single-process only; leases live in memory

Best for: small deployments, demos, local flow authoring.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog

from core.errors import StoreError
from database.store_base import execution_key
from database.store_memory import InMemoryExecutionStore, InMemoryFlowStore
from models.schemas import ExecutionStatus, FlowExecution, InteractiveFlow

logger = structlog.get_logger()


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("file_store_load_error", path=str(path), error=str(e))
        return {}
    return data if isinstance(data, dict) else {}


def _write_json(path: Path, data: dict[str, Any]):
    tmp_path = path.with_suffix(".tmp")
    try:
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX
    except OSError as e:
        raise StoreError(f"writing {path} failed: {e}") from e


class FileExecutionStore(InMemoryExecutionStore):
    """
    Extends InMemoryExecutionStore with JSON file persistence.

    On init: loads executions from disk and rebuilds the active index.
    On every write: flushes the collection to disk.
    """

    def __init__(self, data_dir: str = "./data", **lease_options):
        super().__init__(**lease_options)
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._path = self._data_dir / "executions.json"
        self._executions = _read_json(self._path)
        for execution_id, data in self._executions.items():
            if data.get("status") == ExecutionStatus.ACTIVE.value:
                self._active_index[execution_key(data["tenant_id"], data["contact"])] = execution_id
        logger.info("file_execution_store_initialized", data_dir=str(self._data_dir),
                    records=len(self._executions))

    def _write(self, execution: FlowExecution):
        """Flush to disk, rolling the in-memory record back if the flush fails."""
        key = execution_key(execution.tenant_id, execution.contact)
        previous = self._executions.get(execution.id)
        previous_active = self._active_index.get(key)
        super()._write(execution)
        try:
            _write_json(self._path, self._executions)
        except StoreError:
            if previous is None:
                del self._executions[execution.id]
            else:
                self._executions[execution.id] = previous
            if previous_active is None:
                self._active_index.pop(key, None)
            else:
                self._active_index[key] = previous_active
            raise


class FileFlowStore(InMemoryFlowStore):
    """Extends InMemoryFlowStore with JSON file persistence."""

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._path = self._data_dir / "flows.json"
        self._flows = _read_json(self._path)
        logger.info("file_flow_store_initialized", data_dir=str(self._data_dir),
                    records=len(self._flows))

    async def upsert_flow(self, flow: InteractiveFlow) -> InteractiveFlow:
        previous = self._flows.get(flow.id)
        result = await super().upsert_flow(flow)
        try:
            _write_json(self._path, self._flows)
        except StoreError:
            if previous is None:
                del self._flows[flow.id]
            else:
                self._flows[flow.id] = previous
            raise
        return result
