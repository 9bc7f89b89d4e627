"""
Read-side queries over the canonical store.

Used by the correlator (spawn lookups), the observer refresh loop and the
CLI. Nothing here writes.
"""

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session as DBSession

from agent_ledger.db.schema import (
    AgentSpawn,
    Message,
    Plan,
    Project,
    Session,
    SessionPlan,
    SourceFile,
    Thread,
)
from agent_ledger.ingest.types import MessageType, SourceLocation, SpawnLink, ThreadType


class SpawnLookup:
    """Store-backed fallback for spawn correlation across runs."""

    def __init__(self, db: DBSession):
        self.db = db

    def spawn_for(self, session_id: str, spawn_id: str) -> Optional[SpawnLink]:
        row = self.db.get(AgentSpawn, (session_id, spawn_id))
        if row is None:
            return None
        location = None
        if row.source_path is not None:
            location = SourceLocation(path=row.source_path, offset=row.source_offset or 0)
        link = SpawnLink(
            spawn_id=row.spawn_id,
            session_id=row.session_id,
            parent_thread_id=row.parent_thread_id,
            spawning_seq=row.spawning_seq,
            request_call_id=row.request_call_id,
            request_uuid=row.request_uuid,
            location=location,
        )
        if not link.is_resolved:
            link.spawning_seq = self.spawning_seq_for(
                link.parent_thread_id, link.request_call_id, link.request_uuid,
            )
        return link

    def spawning_seq_for(
        self,
        thread_id: str,
        call_id: Optional[str] = None,
        record_uuid: Optional[str] = None,
    ) -> Optional[int]:
        """Seq of the stored tool call matching ``call_id`` (or the record ``record_uuid``)."""
        if call_id:
            row = self.db.query(Message.seq).filter(
                Message.thread_id == thread_id,
                Message.call_id == call_id,
                Message.message_type == MessageType.TOOL_CALL.value,
            ).order_by(Message.seq).first()
            if row is not None:
                return row.seq
        if record_uuid:
            rows = self.db.query(Message.seq).filter(
                Message.thread_id == thread_id,
                Message.record_uuid == record_uuid,
                Message.message_type == MessageType.TOOL_CALL.value,
            ).all()
            if len(rows) == 1:
                return rows[0].seq
        return None


def unresolved_agent_threads(db: DBSession) -> list[Thread]:
    """Spawned threads whose parent/spawned-by references are still unset."""
    return db.query(Thread).filter(
        Thread.thread_type == ThreadType.AGENT.value,
        Thread.spawn_id.isnot(None),
        Thread.spawned_by_seq.is_(None),
    ).order_by(Thread.id).all()


def messages_since(db: DBSession, after_id: int = 0, limit: Optional[int] = None) -> list[Message]:
    """
    Messages committed after row id ``after_id``, in commit order.

    Callers keep the highest id they have seen and pass it back next time.
    Commit order is not event order; sort by ``emitted_at`` for that.
    """
    query = db.query(Message).filter(Message.id > after_id).order_by(Message.id)
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def latest_message_id(db: DBSession) -> int:
    return db.query(func.max(Message.id)).scalar() or 0


def thread_messages(db: DBSession, thread_id: str) -> list[Message]:
    return db.query(Message).filter(Message.thread_id == thread_id).order_by(Message.seq).all()


def recent_sessions(db: DBSession, limit: int = 20, assistant: Optional[str] = None) -> list[Session]:
    query = db.query(Session)
    if assistant:
        query = query.filter(Session.assistant == assistant)
    return query.order_by(Session.last_activity_at.desc().nulls_last()).limit(limit).all()


def session_plans(db: DBSession, session_id: str) -> list[Plan]:
    """Plans referenced by a session that have been ingested."""
    return db.query(Plan).join(SessionPlan, SessionPlan.plan_id == Plan.id).filter(
        SessionPlan.session_id == session_id,
    ).order_by(Plan.modified_at).all()


def store_counts(db: DBSession) -> dict[str, int]:
    """Row counts per table, for status output and tests."""
    return {
        "projects": db.query(Project).count(),
        "sessions": db.query(Session).count(),
        "threads": db.query(Thread).count(),
        "messages": db.query(Message).count(),
        "plans": db.query(Plan).count(),
        "agent_spawns": db.query(AgentSpawn).count(),
        "source_files": db.query(SourceFile).count(),
    }
