"""
SQLAlchemy models for the agent-ledger canonical store.

Holds projects, sessions, threads, messages and plans, the per-source
checkpoints and the persisted spawn map. Every session, thread and message
row stores the source path and byte offset it was first parsed from.
"""

from pathlib import Path

from sqlalchemy import (
    create_engine,
    event,
    Column,
    String,
    Integer,
    DateTime,
    Text,
    ForeignKey,
    JSON,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    declarative_base,
    sessionmaker,
    relationship,
    Session as DBSession,
)
from sqlalchemy.engine import Engine

Base = declarative_base()


class SourceFile(Base):
    """
    Checkpoint record for one source file.

    ``byte_offset`` resumes append-only sources, ``content_hash`` rewritten
    ones. ``parser_state`` is the dialect parser's resumable context.
    """
    __tablename__ = "source_files"

    path = Column(String, primary_key=True)
    assistant = Column(String, nullable=True)
    entity_kind = Column(String, nullable=True)
    wire_format = Column(String, nullable=True)
    checkpoint_kind = Column(String, nullable=False, default="none")
    byte_offset = Column(Integer, nullable=False, default=0)
    content_hash = Column(String, nullable=True)
    parser_state = Column(JSON, default=dict)
    size_bytes = Column(Integer, nullable=True)
    modified_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False)


class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True)  # sha256(cwd)[:16]
    path = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False)
    last_activity_at = Column(DateTime, nullable=True)

    sessions = relationship("Session", back_populates="project")


class Session(Base):
    """One continuous period of assistant activity."""
    __tablename__ = "sessions"

    id = Column(String, primary_key=True)
    assistant = Column(String, nullable=False)  # claude_code, codex
    project_id = Column(String, ForeignKey("projects.id"), nullable=True)
    backing_model = Column(String, nullable=True)  # provider:model
    started_at = Column(DateTime, nullable=False)
    last_activity_at = Column(DateTime, nullable=True)

    # Lineage
    source_path = Column(String, nullable=False)
    source_offset = Column(Integer, nullable=False, default=0)

    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, default=dict)

    project = relationship("Project", back_populates="sessions")
    threads = relationship("Thread", back_populates="session")

    __table_args__ = (
        Index("ix_sessions_started_at", "started_at"),
        Index("ix_sessions_assistant", "assistant"),
        Index("ix_sessions_project_id", "project_id"),
    )


class Thread(Base):
    """
    A conversation flow inside a session.

    ``parent_thread_id`` and ``spawned_by_seq`` are the only columns ever
    filled in after the row is first written.
    """
    __tablename__ = "threads"

    id = Column(String, primary_key=True)
    session_id = Column(String, ForeignKey("sessions.id"), nullable=False)
    thread_type = Column(String, nullable=False)  # main, agent
    spawn_id = Column(String, nullable=True)
    parent_thread_id = Column(String, nullable=True)
    spawned_by_seq = Column(Integer, nullable=True)
    started_at = Column(DateTime, nullable=False)
    last_activity_at = Column(DateTime, nullable=True)

    source_path = Column(String, nullable=False)
    source_offset = Column(Integer, nullable=False, default=0)

    meta = Column("metadata", JSON, default=dict)

    session = relationship("Session", back_populates="threads")

    __table_args__ = (
        Index("ix_threads_session_id", "session_id"),
        Index("ix_threads_spawn_id", "spawn_id"),
    )


class Message(Base):
    """
    Atomic unit of activity, keyed by (thread_id, seq). Insert-only.

    ``id`` is a monotonically assigned row id used by incremental readers
    ("messages newer than id X"); it says nothing about event order.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, ForeignKey("sessions.id"), nullable=False)
    thread_id = Column(String, ForeignKey("threads.id"), nullable=False)
    seq = Column(Integer, nullable=False)

    emitted_at = Column(DateTime, nullable=False)  # when it happened at the source
    observed_at = Column(DateTime, nullable=False)  # when it was parsed

    author_role = Column(String, nullable=False)
    author_name = Column(String, nullable=True)
    message_type = Column(String, nullable=False)
    content = Column(Text, nullable=True)
    content_type = Column(String, nullable=True)

    tool_name = Column(String, nullable=True)
    tool_input = Column(JSON, nullable=True)
    tool_result = Column(Text, nullable=True)
    call_id = Column(String, nullable=True)
    record_uuid = Column(String, nullable=True)

    tokens_in = Column(Integer, nullable=True)
    tokens_out = Column(Integer, nullable=True)

    source_path = Column(String, nullable=False)
    source_offset = Column(Integer, nullable=False)
    source_line = Column(Integer, nullable=True)
    raw_data = Column(JSON, nullable=False)

    meta = Column("metadata", JSON, default=dict)

    __table_args__ = (
        UniqueConstraint("thread_id", "seq", name="uq_messages_thread_seq"),
        Index("ix_messages_session_id", "session_id"),
        Index("ix_messages_emitted_at", "emitted_at"),
        Index("ix_messages_call_id", "call_id"),
    )


class Plan(Base):
    """A plan document; rewritten in place, so its content may change."""
    __tablename__ = "plans"

    id = Column(String, primary_key=True)  # slug
    path = Column(String, nullable=False)
    title = Column(String, nullable=True)
    content = Column(Text, nullable=False)
    content_hash = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False)
    modified_at = Column(DateTime, nullable=False)
    source_path = Column(String, nullable=False)

    meta = Column("metadata", JSON, default=dict)


class SessionPlan(Base):
    """Session -> plan slug reference. The plan row may arrive later."""
    __tablename__ = "session_plans"

    session_id = Column(String, ForeignKey("sessions.id"), primary_key=True)
    plan_id = Column(String, primary_key=True)
    linked_at = Column(DateTime, nullable=False)


class AgentSpawn(Base):
    """
    Persisted spawn map: spawn id -> spawning message.

    Written from spawn-completion records so a spawned thread parsed in a
    later run can still be linked.
    """
    __tablename__ = "agent_spawns"

    session_id = Column(String, primary_key=True)
    spawn_id = Column(String, primary_key=True)
    parent_thread_id = Column(String, nullable=False)
    spawning_seq = Column(Integer, nullable=True)
    request_call_id = Column(String, nullable=True)
    request_uuid = Column(String, nullable=True)
    source_path = Column(String, nullable=True)
    source_offset = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False)


# Engines are cached per store path; each store gets its own engine.
_engines: dict[str, Engine] = {}


def _sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    # WAL lets observers read while the ingest process commits.
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def get_engine(db_path: Path | str) -> Engine:
    """Get or create the engine for a store path."""
    key = str(Path(db_path).expanduser().resolve())
    engine = _engines.get(key)
    if engine is None:
        Path(key).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(f"sqlite:///{key}", echo=False)
        event.listen(engine, "connect", _sqlite_pragmas)
        _engines[key] = engine
    return engine


def dispose_engine(db_path: Path | str) -> None:
    """Close pooled connections for a store path."""
    key = str(Path(db_path).expanduser().resolve())
    engine = _engines.pop(key, None)
    if engine is not None:
        engine.dispose()


def init_db(db_path: Path | str) -> Engine:
    """Initialize database with all tables."""
    engine = get_engine(db_path)
    Base.metadata.create_all(engine)
    return engine


def get_session(db_path: Path | str) -> DBSession:
    """Get a new database session."""
    engine = get_engine(db_path)
    Session = sessionmaker(bind=engine)
    return Session()
