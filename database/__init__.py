"""
Database layer: Multi-backend persistence for flows and executions.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_stores
  stores = create_stores(DatabaseConfig(store_backend="memory"))
  execution = await stores.executions.get_active("tenant-1", "+5511999990000")
"""
from database.models import Base, FlowRow, FlowExecutionRow, ExecutionLeaseRow
from database.session import create_engine_from_url, make_session_scope, init_db
from database.store_base import BaseExecutionStore, BaseFlowStore, execution_key
from database.store import SqlExecutionStore, SqlFlowStore
from database.store_memory import InMemoryExecutionStore, InMemoryFlowStore
from database.store_file import FileExecutionStore, FileFlowStore
from database.store_factory import Stores, create_stores

__all__ = [
    # ORM models
    "Base", "FlowRow", "FlowExecutionRow", "ExecutionLeaseRow",
    # Session management
    "create_engine_from_url", "make_session_scope", "init_db",
    # Store interfaces
    "BaseExecutionStore", "BaseFlowStore", "execution_key",
    # Store backends
    "SqlExecutionStore", "SqlFlowStore",
    "InMemoryExecutionStore", "InMemoryFlowStore",
    "FileExecutionStore", "FileFlowStore",
    # Factory
    "Stores", "create_stores",
]
