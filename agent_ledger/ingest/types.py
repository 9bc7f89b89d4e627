"""
Normalized ingest types shared by the discoverer, parsers, correlator and
writer.

Every parsed entity keeps a ``SourceLocation`` (path, byte offset, line) and
messages keep the complete original record in ``raw_data``.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Any


class Assistant(str, Enum):
    """Coding assistant products with a supported log dialect."""
    CLAUDE_CODE = "claude_code"
    CODEX = "codex"

    @property
    def display_name(self) -> str:
        return {
            Assistant.CLAUDE_CODE: "Claude Code",
            Assistant.CODEX: "Codex",
        }[self]


class EntityKind(str, Enum):
    """What a source file holds."""
    SESSION = "session"
    DOCUMENT = "document"


class WireFormat(str, Enum):
    """How a source file changes on disk; decides the checkpoint strategy."""
    APPEND_LINES = "append_lines"  # JSONL, resumed by byte offset
    REWRITTEN = "rewritten"  # whole file replaced, resumed by content hash
    RANDOM_ACCESS = "random_access"  # database files, not parsed yet


class ThreadType(str, Enum):
    MAIN = "main"
    AGENT = "agent"


class AuthorRole(str, Enum):
    HUMAN = "human"
    CALLER = "caller"  # CLI or parent assistant driving a session/agent
    ASSISTANT = "assistant"
    AGENT = "agent"
    TOOL = "tool"
    SYSTEM = "system"


class MessageType(str, Enum):
    PROMPT = "prompt"
    RESPONSE = "response"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    PLAN = "plan"
    SUMMARY = "summary"
    CONTEXT = "context"
    ERROR = "error"


class SkipReason(str, Enum):
    """Why a source produced nothing to write on this pass."""
    UNCHANGED = "unchanged"
    EMPTY_FILE = "empty_file"
    ALREADY_PARSED = "already_parsed"
    NO_NEW_CONTENT = "no_new_content"


# Timestamps are stored as naive UTC throughout the store.

def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(ts: Any) -> Optional[datetime]:
    """Parse an RFC 3339 / ISO 8601 timestamp into naive UTC."""
    if not ts:
        return None
    if isinstance(ts, datetime):
        return to_naive_utc(ts)
    try:
        return to_naive_utc(datetime.fromisoformat(str(ts).replace("Z", "+00:00")))
    except (ValueError, AttributeError):
        return None


@dataclass(frozen=True)
class SourceRecord:
    """
    A discovered source file.

    Identity is the absolute path; kind and format come from the dialect
    pattern that matched it. Size and mtime are re-read every pass.
    """
    path: Path
    assistant: Assistant
    entity_kind: EntityKind
    wire_format: WireFormat
    size_bytes: int = 0
    modified_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return str(self.path)


@dataclass
class Checkpoint:
    """
    Resumption marker for one source.

    Append-only sources resume from ``offset``; rewritten sources compare
    ``content_hash``. ``state`` carries the dialect parser's resumable
    context (next sequence number, session/thread ids, last timestamp) so a
    resumed parse produces exactly what a single full parse would.
    """
    source_path: str
    offset: int = 0
    content_hash: Optional[str] = None
    state: dict[str, Any] = field(default_factory=dict)
    size_bytes: Optional[int] = None
    modified_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def empty(cls, source_path: Path | str) -> "Checkpoint":
        return cls(source_path=str(source_path))

    @property
    def is_empty(self) -> bool:
        return self.updated_at is None and self.offset == 0 and self.content_hash is None

    @property
    def kind(self) -> str:
        if self.content_hash is not None:
            return "content_hash"
        if self.offset or self.state:
            return "byte_offset"
        return "none"

    def advanced(self, **changes: Any) -> "Checkpoint":
        return replace(self, **changes)

    def same_position(self, other: "Checkpoint") -> bool:
        return (
            self.offset == other.offset
            and self.content_hash == other.content_hash
            and self.state == other.state
        )


@dataclass(frozen=True)
class SourceLocation:
    """Lineage pointer back to the exact bytes a record came from."""
    path: str
    offset: int
    line: Optional[int] = None


@dataclass
class RawRecord:
    """
    One decoded line of a source file.

    ``kind`` is the top-level record tag; ``raw`` is the complete original
    JSON object, kept verbatim even for fields no normalizer understands.
    """
    kind: str
    raw: dict[str, Any]
    location: SourceLocation


@dataclass
class ParsedProject:
    id: str
    path: str
    name: Optional[str]
    created_at: datetime
    last_activity_at: Optional[datetime] = None


@dataclass
class ParsedSession:
    id: str
    assistant: Assistant
    started_at: datetime
    last_activity_at: Optional[datetime]
    source_path: str
    source_offset: int
    project_id: Optional[str] = None
    backing_model: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedThread:
    """
    A conversation flow inside a session.

    ``spawn_id`` is set on spawned threads and is the key the correlator
    uses. ``parent_thread_id``/``spawned_by_seq`` stay ``None`` until the
    spawning message is known.
    """
    id: str
    session_id: str
    thread_type: ThreadType
    started_at: datetime
    source_path: str
    source_offset: int
    last_activity_at: Optional[datetime] = None
    spawn_id: Optional[str] = None
    parent_thread_id: Optional[str] = None
    spawned_by_seq: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_linked(self) -> bool:
        return self.parent_thread_id is not None and self.spawned_by_seq is not None


@dataclass
class ParsedMessage:
    """The atomic unit of activity, keyed by (thread_id, seq)."""
    session_id: str
    thread_id: str
    seq: int
    emitted_at: datetime
    observed_at: datetime
    author_role: AuthorRole
    message_type: MessageType
    source_path: str
    source_offset: int
    source_line: Optional[int]
    raw_data: dict[str, Any]
    author_name: Optional[str] = None
    content: Optional[str] = None
    content_type: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Optional[Any] = None
    tool_result: Optional[str] = None
    call_id: Optional[str] = None
    record_uuid: Optional[str] = None
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, int]:
        return (self.thread_id, self.seq)


@dataclass
class ParsedPlan:
    id: str
    path: str
    title: Optional[str]
    content: str
    content_hash: str
    created_at: datetime
    modified_at: datetime
    source_path: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SpawnLink:
    """
    Spawn id -> spawning message, extracted from a spawn-completion record.

    ``spawning_seq`` is filled in when the spawn request was parsed in the
    same scan. Otherwise ``request_call_id``/``request_uuid`` hold the
    back-pointer and the correlator resolves it against the store.
    """
    spawn_id: str
    session_id: str
    parent_thread_id: str
    spawning_seq: Optional[int] = None
    request_call_id: Optional[str] = None
    request_uuid: Optional[str] = None
    location: Optional[SourceLocation] = None

    @property
    def is_resolved(self) -> bool:
        return self.spawning_seq is not None


@dataclass
class ParseResult:
    """Everything one parse of one source produced, plus its new marker."""
    source: SourceRecord
    new_checkpoint: Checkpoint
    project: Optional[ParsedProject] = None
    session: Optional[ParsedSession] = None
    threads: list[ParsedThread] = field(default_factory=list)
    messages: list[ParsedMessage] = field(default_factory=list)
    plans: list[ParsedPlan] = field(default_factory=list)
    spawn_links: list[SpawnLink] = field(default_factory=list)
    plan_refs: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    skip_reason: Optional[SkipReason] = None
    truncated: bool = False

    @property
    def has_entities(self) -> bool:
        return bool(
            self.session or self.threads or self.messages
            or self.plans or self.spawn_links
        )
