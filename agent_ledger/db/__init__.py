"""Database module: SQLite canonical store, checkpoints and writer."""

from agent_ledger.db.schema import (
    Base,
    SourceFile,
    Project,
    Session,
    Thread,
    Message,
    Plan,
    SessionPlan,
    AgentSpawn,
    init_db,
    get_engine,
    get_session,
    dispose_engine,
)
from agent_ledger.db.writer import StoreWriter, WriteOutcome

__all__ = [
    "Base",
    "SourceFile",
    "Project",
    "Session",
    "Thread",
    "Message",
    "Plan",
    "SessionPlan",
    "AgentSpawn",
    "init_db",
    "get_engine",
    "get_session",
    "dispose_engine",
    "StoreWriter",
    "WriteOutcome",
]
